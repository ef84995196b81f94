"""Deterministic checks applied to every extracted claim.

These run after the LLM and never consult it: domain whitelist, numeric
ranges by value type (tightened per domain), calendar dates and currency
codes. A failed check names the ``RejectionType`` the claim is filed under.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date

from regwatch.storage.database.models import RejectionType

VALID_DOMAINS = frozenset(
    {
        "pausalni",
        "pdv",
        "porez_dohodak",
        "doprinosi",
        "fiskalizacija",
        "rokovi",
        "obrasci",
        "interest_rates",
        "exchange_rates",
    }
)

PERCENTAGE_TYPES = frozenset({"percentage", "vat_rate", "rate"})
CURRENCY_TYPES = frozenset({"currency", "currency_eur", "currency_hrk"})
NUMERIC_TYPES = (
    PERCENTAGE_TYPES | CURRENCY_TYPES | {"interest_rate", "exchange_rate", "count"}
)

# Domain-specific upper bounds
DOMAIN_PERCENTAGE_MAX = {"pdv": 30.0, "doprinosi": 50.0, "porez_dohodak": 60.0}
DOMAIN_CURRENCY_MAX = {"pausalni": 1_000_000.0}

MAX_CURRENCY_AMOUNT = 100_000_000_000.0
INTEREST_RATE_MAX = 20.0
EXCHANGE_RATE_MIN = 0.0001
EXCHANGE_RATE_MAX = 10_000.0
MIN_QUOTE_LENGTH = 5
DATE_YEAR_MIN = 1990
DATE_YEAR_MAX = 2050

ISO_4217_CODES = frozenset(
    {
        "EUR", "HRK", "USD", "GBP", "CHF", "JPY", "CNY", "AUD", "CAD", "SEK",
        "NOK", "DKK", "PLN", "CZK", "HUF", "RON", "BGN", "RSD", "BAM", "MKD",
        "TRY", "ISK", "NZD", "HKD", "SGD", "KRW", "INR", "BRL", "MXN", "ZAR",
    }
)  # fmt: skip

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
THOUSANDS_DOT = re.compile(r"^\d{1,3}(\.\d{3})+$")
THOUSANDS_COMMA = re.compile(r"^\d{1,3}(,\d{3})+$")


@dataclass
class CheckResult:
    valid: bool
    rejection_type: RejectionType | None = None
    errors: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> "CheckResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, rejection_type: RejectionType, error: str) -> "CheckResult":
        return cls(valid=False, rejection_type=rejection_type, errors=[error])


def parse_number(value: str | float | int) -> float | None:
    """Parse a number written with Croatian or English separators.

    "40.000,00" -> 40000.0, "1,234.5" -> 1234.5, "25%" -> 25.0
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)

    text = value.strip().replace("\u00a0", "").replace(" ", "")
    text = re.sub(r"[%€$£]|EUR|HRK|kn", "", text, flags=re.IGNORECASE)
    if not text:
        return None

    sign = ""
    if text[0] in "+-":
        sign, text = text[0], text[1:]

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        # "1,000,000" groups thousands; a single comma is the decimal mark
        if THOUSANDS_COMMA.match(text) and text.count(",") > 1:
            text = text.replace(",", "")
        else:
            text = text.replace(",", ".")
    elif THOUSANDS_DOT.match(text):
        text = text.replace(".", "")

    try:
        return float(sign + text)
    except ValueError:
        return None


def validate_domain(domain: str) -> CheckResult:
    if domain not in VALID_DOMAINS:
        return CheckResult.fail(RejectionType.VALIDATION_FAILED, f"Unknown domain: {domain}")
    return CheckResult.ok()


def _numeric(value: str, label: str) -> float | CheckResult:
    number = parse_number(value)
    if number is None:
        return CheckResult.fail(RejectionType.VALIDATION_FAILED, f"{label} must be a number: {value!r}")
    return number


def validate_percentage(value: str, domain: str) -> CheckResult:
    number = _numeric(value, "Percentage")
    if isinstance(number, CheckResult):
        return number
    maximum = DOMAIN_PERCENTAGE_MAX.get(domain, 100.0)
    if number < 0:
        return CheckResult.fail(RejectionType.OUT_OF_RANGE, "Percentage cannot be negative")
    if number > maximum:
        return CheckResult.fail(
            RejectionType.OUT_OF_RANGE, f"Percentage {number} exceeds {maximum} for {domain}"
        )
    return CheckResult.ok()


def validate_interest_rate(value: str, domain: str) -> CheckResult:
    number = _numeric(value, "Interest rate")
    if isinstance(number, CheckResult):
        return number
    if not 0 <= number <= INTEREST_RATE_MAX:
        return CheckResult.fail(
            RejectionType.OUT_OF_RANGE, f"Interest rate {number} outside 0..{INTEREST_RATE_MAX}"
        )
    return CheckResult.ok()


def validate_exchange_rate(value: str, domain: str) -> CheckResult:
    number = _numeric(value, "Exchange rate")
    if isinstance(number, CheckResult):
        return number
    if not EXCHANGE_RATE_MIN <= number <= EXCHANGE_RATE_MAX:
        return CheckResult.fail(
            RejectionType.OUT_OF_RANGE,
            f"Exchange rate {number} outside {EXCHANGE_RATE_MIN}..{EXCHANGE_RATE_MAX}",
        )
    return CheckResult.ok()


def validate_currency(value: str, domain: str) -> CheckResult:
    number = parse_number(value)
    if number is None:
        return CheckResult.fail(RejectionType.INVALID_CURRENCY, f"Amount must be a number: {value!r}")
    maximum = DOMAIN_CURRENCY_MAX.get(domain, MAX_CURRENCY_AMOUNT)
    if number < 0:
        return CheckResult.fail(RejectionType.INVALID_CURRENCY, "Amount cannot be negative")
    if number > maximum:
        return CheckResult.fail(
            RejectionType.INVALID_CURRENCY, f"Amount {number} is unrealistic for {domain}"
        )
    return CheckResult.ok()


def validate_count(value: str, domain: str) -> CheckResult:
    number = _numeric(value, "Count")
    if isinstance(number, CheckResult):
        return number
    if number < 0:
        return CheckResult.fail(RejectionType.OUT_OF_RANGE, "Count cannot be negative")
    if not number.is_integer():
        return CheckResult.fail(RejectionType.VALIDATION_FAILED, f"Count must be an integer: {value!r}")
    return CheckResult.ok()


def validate_date(value: str, domain: str = "") -> CheckResult:
    if not ISO_DATE_PATTERN.match(value.strip()):
        return CheckResult.fail(RejectionType.INVALID_DATE, f"Date must be YYYY-MM-DD: {value!r}")
    try:
        parsed = date.fromisoformat(value.strip())
    except ValueError:
        return CheckResult.fail(RejectionType.INVALID_DATE, f"Not a calendar date: {value!r}")
    if not DATE_YEAR_MIN <= parsed.year <= DATE_YEAR_MAX:
        return CheckResult.fail(
            RejectionType.INVALID_DATE, f"Year {parsed.year} outside {DATE_YEAR_MIN}..{DATE_YEAR_MAX}"
        )
    return CheckResult.ok()


def validate_currency_code(value: str, domain: str = "") -> CheckResult:
    if value.strip().upper() not in ISO_4217_CODES:
        return CheckResult.fail(RejectionType.INVALID_CURRENCY, f"Unknown currency code: {value!r}")
    return CheckResult.ok()


VALUE_VALIDATORS: dict[str, Callable[[str, str], CheckResult]] = {
    **{t: validate_percentage for t in PERCENTAGE_TYPES},
    **{t: validate_currency for t in CURRENCY_TYPES},
    "interest_rate": validate_interest_rate,
    "exchange_rate": validate_exchange_rate,
    "count": validate_count,
    "date": validate_date,
    "currency_code": validate_currency_code,
}


def validate_value(value_type: str, value: str, domain: str) -> CheckResult:
    """Range check for ``value``; types without a validator (text) pass."""
    validator = VALUE_VALIDATORS.get(value_type)
    if validator is None:
        return CheckResult.ok()
    return validator(value, domain)


def validate_claim_fields(
    domain: str,
    value_type: str,
    value: str,
    exact_quote: str,
    confidence: float,
) -> CheckResult:
    """Domain, confidence, quote length and value range, in that order.

    A quote shorter than ``MIN_QUOTE_LENGTH`` is accepted only when it carries
    the value itself, e.g. ``"25%"`` for a 25 percent rate.
    """
    result = validate_domain(domain)
    if not result.valid:
        return result

    if not 0.0 <= confidence <= 1.0:
        return CheckResult.fail(
            RejectionType.VALIDATION_FAILED, f"Confidence {confidence} must be between 0 and 1"
        )
    quote = (exact_quote or "").strip()
    bare_value = (value or "").strip()
    if len(quote) < MIN_QUOTE_LENGTH and not (bare_value and bare_value in quote):
        return CheckResult.fail(
            RejectionType.VALIDATION_FAILED,
            f"Exact quote must be at least {MIN_QUOTE_LENGTH} characters or contain the value",
        )

    return validate_value(value_type, value, domain)
