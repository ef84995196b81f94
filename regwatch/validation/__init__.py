"""Deterministic validation of extracted claims."""

from regwatch.validation.deterministic import (
    VALID_DOMAINS,
    CheckResult,
    parse_number,
    validate_claim_fields,
    validate_value,
)
from regwatch.validation.quote_match import (
    QuoteMatch,
    find_quote_in_evidence,
    normalize_for_match,
    value_in_quote,
)

__all__ = [
    "VALID_DOMAINS",
    "CheckResult",
    "QuoteMatch",
    "find_quote_in_evidence",
    "normalize_for_match",
    "parse_number",
    "validate_claim_fields",
    "validate_value",
    "value_in_quote",
]
