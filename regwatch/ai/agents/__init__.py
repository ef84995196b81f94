"""Regulatory agents: extraction, composition, review, arbitration and release."""

from regwatch.ai.agents.arbiter import Arbiter, ArbitrationDecision, ArbitrationOutcome
from regwatch.ai.agents.composer import ComposeResult, Composer
from regwatch.ai.agents.extractor import ExtractionAgent, ExtractionResult
from regwatch.ai.agents.prompts import AgentType
from regwatch.ai.agents.reference_extractor import ReferenceExtractionResult, ReferenceExtractor
from regwatch.ai.agents.releaser import ReleaseResult, Releaser
from regwatch.ai.agents.reviewer import ReviewDecision, ReviewOutcome, Reviewer
from regwatch.ai.agents.runner import AgentFailure, AgentResult, AgentRunner, AgentSuccess

__all__ = [
    "AgentFailure",
    "AgentResult",
    "AgentRunner",
    "AgentSuccess",
    "AgentType",
    "Arbiter",
    "ArbitrationDecision",
    "ArbitrationOutcome",
    "ComposeResult",
    "Composer",
    "ExtractionAgent",
    "ExtractionResult",
    "ReferenceExtractionResult",
    "ReferenceExtractor",
    "ReleaseResult",
    "Releaser",
    "ReviewDecision",
    "ReviewOutcome",
    "Reviewer",
]
