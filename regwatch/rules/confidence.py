"""Rule confidence aggregation with reason codes."""

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

SOURCE_WEIGHT = 0.6
LLM_WEIGHT = 0.4
CORROBORATION_BONUS = 0.05
HIGH_CONFIDENCE = 0.9
LOW_CONFIDENCE = 0.7

CLASSIFICATION_WEIGHTS = {
    "supporting": 0.02,
    "neutral": 0.0,
    "contradicted": -0.25,
    "weak": -0.1,
}


@dataclass(frozen=True)
class ConfidenceEnvelope:
    score: float
    reasons: list[str] = field(default_factory=list)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def aggregate_confidence(
    pointer_confidences: Sequence[float],
    llm_confidence: float,
    classifications: Iterable[str] = (),
    independent_sources: int = 1,
    authoritative: bool = False,
) -> ConfidenceEnvelope:
    """
    Weighted mean of source and LLM confidence, adjusted by evidence links.

    Args:
        pointer_confidences: Confidence of each backing source pointer
        llm_confidence: Confidence the composing/reviewing LLM reported
        classifications: Per-evidence link quality (supporting, neutral,
            contradicted, weak)
        independent_sources: Number of distinct evidences behind the rule
        authoritative: Whether a backing source is a primary legal source

    Returns:
        Score clamped to [0, 1] and the reason codes that shaped it
    """
    reasons: list[str] = []

    sources = [clamp(c) for c in pointer_confidences]
    source_score = sum(sources) / len(sources) if sources else 0.0
    llm_score = clamp(llm_confidence)

    if source_score >= HIGH_CONFIDENCE:
        reasons.append("HIGH_SOURCE_CONFIDENCE")
    elif source_score < LOW_CONFIDENCE:
        reasons.append("LOW_SOURCE_CONFIDENCE")

    score = SOURCE_WEIGHT * source_score + LLM_WEIGHT * llm_score

    if independent_sources >= 2:
        score += CORROBORATION_BONUS
        reasons.append("MULTIPLE_SOURCES")
    else:
        reasons.append("SINGLE_SOURCE")

    seen: set[str] = set()
    for classification in classifications:
        score += CLASSIFICATION_WEIGHTS.get(classification, 0.0)
        seen.add(classification)
    if "weak" in seen:
        reasons.append("WEAK_EVIDENCE_LINK")
    if "contradicted" in seen:
        reasons.append("CONTRADICTED_SOURCE")

    if llm_score < LOW_CONFIDENCE:
        reasons.append("LOW_LLM_CONFIDENCE")
    if authoritative:
        reasons.append("AUTHORITATIVE_SOURCE")

    return ConfidenceEnvelope(score=round(clamp(score), 4), reasons=reasons)
