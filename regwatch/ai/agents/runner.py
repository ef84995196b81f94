"""Agent runner: the single choke point between the pipeline and the LLM.

Every agent call goes through ``AgentRunner.run``:

1. the input is validated against its pydantic schema (no LLM call otherwise)
2. an ``AgentRun`` row is committed in ``running`` state
3. the provider is called under ``asyncio.wait_for``; the JSON-only contract lives in the
   system prompt, and ``AgentConfig.json_mode`` adds the provider's native JSON mode
4. the reply is reduced to its first balanced JSON object and validated
5. transient failures are retried with backoff, rate limits with a longer one

Callers get an ``AgentSuccess`` or ``AgentFailure`` back; the runner only
raises for programming errors.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from regwatch.ai.agents.prompts import AGENT_PROFILES, AgentProfile, AgentType, system_prompt_for
from regwatch.ai.domain.message import Message, Role
from regwatch.ai.domain.response import AgentResponse
from regwatch.ai.providers.base import BaseLLMProvider
from regwatch.exceptions import (
    AgentOutputError,
    AgentRunError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    RegwatchError,
    is_rate_limit,
    is_retryable,
)
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import AgentRun, AgentRunStatus
from regwatch.storage.session import session_scope
from regwatch.utils.config import AgentConfig, get_settings
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger
from regwatch.utils.retry import RetryConfig, retry_async

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

FENCE_MARKER = "```"


class AgentErrorKind(str, Enum):
    INPUT_VALIDATION = "INPUT_VALIDATION"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    PARSE = "PARSE"
    OUTPUT_VALIDATION = "OUTPUT_VALIDATION"
    PROVIDER = "PROVIDER"
    AUTH = "AUTH"


@dataclass(frozen=True)
class AgentSuccess(Generic[T]):
    output: T
    run_id: int
    duration_ms: int
    tokens_used: int

    ok = True


@dataclass(frozen=True)
class AgentFailure:
    error: AgentRunError
    run_id: int
    error_kind: AgentErrorKind

    ok = False


AgentResult = AgentSuccess[T] | AgentFailure


def strip_code_fences(text: str) -> str:
    """Drop a surrounding ```json ... ``` block if present."""
    text = text.strip()
    if FENCE_MARKER not in text:
        return text
    start = text.find(FENCE_MARKER)
    body_start = text.find("\n", start)
    if body_start == -1:
        return text.replace(FENCE_MARKER, "").strip()
    end = text.find(FENCE_MARKER, body_start)
    body = text[body_start + 1 : end if end != -1 else len(text)]
    return body.strip()


def find_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring, honouring string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        # unbalanced from here; try the next opening brace
        start = text.find("{", start + 1)
    return None


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract and decode the JSON object in an LLM reply.

    Raises:
        AgentOutputError: no object found or it does not decode
    """
    candidate = find_json_object(strip_code_fences(text))
    if candidate is None:
        raise AgentOutputError(
            "No JSON object in agent output",
            raw_output=text,
            context={"stage": AgentErrorKind.PARSE.value},
        )
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise AgentOutputError(
            f"Invalid JSON in agent output: {e.msg}",
            raw_output=text,
            context={"stage": AgentErrorKind.PARSE.value},
            original_error=e,
        )
    if not isinstance(data, dict):
        raise AgentOutputError(
            "Agent output is not a JSON object",
            raw_output=text,
            context={"stage": AgentErrorKind.PARSE.value},
        )
    return data


def classify_error(error: Exception) -> AgentErrorKind:
    if isinstance(error, ProviderAuthError):
        return AgentErrorKind.AUTH
    if isinstance(error, ProviderError) and error.status_code == 401:
        return AgentErrorKind.AUTH
    if isinstance(error, ProviderRateLimitError):
        return AgentErrorKind.RATE_LIMITED
    if isinstance(error, ProviderTimeoutError):
        return AgentErrorKind.TIMEOUT
    if isinstance(error, AgentOutputError):
        return AgentErrorKind(error.context.get("stage", AgentErrorKind.PARSE.value))
    return AgentErrorKind.PROVIDER


class AgentRunner:
    """Runs one agent invocation with validation, persistence and retries."""

    def __init__(
        self,
        provider: BaseLLMProvider,
        session_factory: SessionFactory,
        config: AgentConfig | None = None,
        profiles: dict[AgentType, AgentProfile] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self._session_factory = session_factory
        self.config = config or get_settings().agents
        self.profiles = profiles or AGENT_PROFILES
        self._sleep = sleep

    def retry_config(self, max_retries: int | None = None) -> RetryConfig:
        retries = self.config.max_retries if max_retries is None else max_retries
        return RetryConfig(
            max_retries=retries,
            base_delay=self.config.base_retry_delay,
            max_delay=self.config.max_retry_delay,
            is_retryable=is_retryable,
            is_rate_limit=is_rate_limit,
            rate_limit=RetryConfig(
                max_retries=retries,
                base_delay=self.config.rate_limit_base_delay,
                max_delay=self.config.rate_limit_max_delay,
            ),
        )

    async def run(
        self,
        agent_type: AgentType,
        input: dict[str, Any] | BaseModel,
        input_schema: type[BaseModel],
        output_schema: type[T],
        temperature: float | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        evidence_id: int | None = None,
        rule_id: int | None = None,
    ) -> AgentResult[T]:
        profile = self.profiles[agent_type]
        raw_input = input.model_dump(mode="json") if isinstance(input, BaseModel) else input

        try:
            validated = input_schema.model_validate(raw_input)
        except SchemaValidationError as e:
            run_id = self._create_run(
                agent_type,
                _jsonable(raw_input),
                evidence_id,
                rule_id,
                status=AgentRunStatus.FAILED,
                error=str(e),
                error_kind=AgentErrorKind.INPUT_VALIDATION,
            )
            logger.warning(
                "agent_input_invalid",
                agent_type=agent_type.value,
                run_id=run_id,
                errors=e.error_count(),
            )
            return AgentFailure(
                error=AgentRunError(
                    f"{agent_type.value} input failed validation: {e.error_count()} error(s)",
                    agent_type=agent_type.value,
                    run_id=run_id,
                    error_kind=AgentErrorKind.INPUT_VALIDATION.value,
                ),
                run_id=run_id,
                error_kind=AgentErrorKind.INPUT_VALIDATION,
            )

        payload = validated.model_dump(mode="json")
        run_id = self._create_run(agent_type, payload, evidence_id, rule_id)

        messages = [Message(role=Role.USER, content=json.dumps(payload, ensure_ascii=False))]
        system_prompt = system_prompt_for(agent_type)
        call_timeout = timeout if timeout is not None else profile.timeout_seconds
        call_temperature = temperature if temperature is not None else profile.temperature

        attempts = 0
        tokens_used = 0
        started = time.perf_counter()

        async def attempt() -> tuple[T, AgentResponse]:
            nonlocal attempts, tokens_used
            attempts += 1
            try:
                response = await asyncio.wait_for(
                    self.provider.generate(
                        messages=messages,
                        system_prompt=system_prompt,
                        temperature=call_temperature,
                        max_tokens=profile.max_tokens,
                        json_mode=self.config.json_mode,
                    ),
                    timeout=call_timeout,
                )
            except TimeoutError as e:
                raise ProviderTimeoutError(
                    f"{agent_type.value} timed out after {call_timeout}s",
                    provider=self.provider.provider_name,
                    original_error=e,
                )
            tokens_used += response.usage.total_tokens

            data = parse_json_object(response.content)
            try:
                output = output_schema.model_validate(data)
            except SchemaValidationError as e:
                raise AgentOutputError(
                    f"{agent_type.value} output failed validation: {e.error_count()} error(s)",
                    raw_output=response.content,
                    context={"stage": AgentErrorKind.OUTPUT_VALIDATION.value},
                    original_error=e,
                )
            return output, response

        async def on_retry(error: Exception, attempt_number: int) -> None:
            fields: dict[str, Any] = {"attempt": attempt_number, "error": str(error)}
            if isinstance(error, AgentOutputError):
                fields["raw_output"] = error.raw_output
            self._update_run(run_id, **fields)

        try:
            output, response = await retry_async(
                attempt,
                config=self.retry_config(max_retries),
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RegwatchError as e:
            kind = classify_error(e)
            duration_ms = int((time.perf_counter() - started) * 1000)
            failed: dict[str, Any] = {
                "status": AgentRunStatus.FAILED,
                "attempt": attempts,
                "error": str(e),
                "error_kind": kind,
                "duration_ms": duration_ms,
                "tokens_used": tokens_used,
                "completed_at": utc_now(),
            }
            if isinstance(e, AgentOutputError):
                failed["raw_output"] = e.raw_output
            self._update_run(run_id, **failed)
            logger.error(
                "agent_run_failed",
                agent_type=agent_type.value,
                run_id=run_id,
                error_kind=kind.value,
                attempts=attempts,
                error=str(e),
            )
            return AgentFailure(
                error=AgentRunError(
                    f"{agent_type.value} failed: {e.message}",
                    agent_type=agent_type.value,
                    run_id=run_id,
                    error_kind=kind.value,
                    original_error=e,
                ),
                run_id=run_id,
                error_kind=kind,
            )
        except Exception as e:
            self._update_run(
                run_id,
                status=AgentRunStatus.FAILED,
                attempt=attempts,
                error=f"{type(e).__name__}: {e}",
                completed_at=utc_now(),
            )
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        self._update_run(
            run_id,
            status=AgentRunStatus.COMPLETED,
            attempt=attempts,
            output=output.model_dump(mode="json"),
            raw_output=response.content,
            error=None,
            duration_ms=duration_ms,
            tokens_used=tokens_used,
            confidence=_output_confidence(output),
            completed_at=utc_now(),
        )
        logger.info(
            "agent_run_completed",
            agent_type=agent_type.value,
            run_id=run_id,
            attempts=attempts,
            duration_ms=duration_ms,
            tokens_used=tokens_used,
        )
        return AgentSuccess(
            output=output, run_id=run_id, duration_ms=duration_ms, tokens_used=tokens_used
        )

    def _create_run(
        self,
        agent_type: AgentType,
        payload: dict[str, Any],
        evidence_id: int | None,
        rule_id: int | None,
        status: AgentRunStatus = AgentRunStatus.RUNNING,
        error: str | None = None,
        error_kind: AgentErrorKind | None = None,
    ) -> int:
        with session_scope(self._session_factory) as db:
            run = AgentRun(
                agent_type=agent_type.value,
                status=status,
                input=payload,
                error=error,
                error_kind=error_kind.value if error_kind else None,
                evidence_id=evidence_id,
                rule_id=rule_id,
                completed_at=utc_now() if status == AgentRunStatus.FAILED else None,
            )
            db.add(run)
            db.flush()
            return run.id

    def _update_run(self, run_id: int, **fields: Any) -> None:
        if isinstance(fields.get("error_kind"), AgentErrorKind):
            fields["error_kind"] = fields["error_kind"].value
        with session_scope(self._session_factory) as db:
            run = db.get(AgentRun, run_id)
            for name, value in fields.items():
                setattr(run, name, value)


def _jsonable(data: Any) -> dict[str, Any]:
    """Best-effort JSON copy of an input that failed validation."""
    if isinstance(data, dict):
        return json.loads(json.dumps(data, default=str))
    return {"value": json.loads(json.dumps(data, default=str))}


def _output_confidence(output: BaseModel) -> float | None:
    confidence = getattr(output, "confidence", None)
    return float(confidence) if isinstance(confidence, int | float) else None
