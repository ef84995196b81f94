"""Provenance checks: the quote must be in the evidence, the value in the quote.

Matching is exact first, then on normalized text. There is no fuzzy
matching and no similarity scoring.
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import date

from regwatch.validation.deterministic import NUMERIC_TYPES, parse_number

DOUBLE_QUOTES = "“”„‟«»‹›❝❞❮❯＂"
APOSTROPHES = "‘’‚‛′＇"
QUOTE_TABLE = str.maketrans({**dict.fromkeys(DOUBLE_QUOTES, '"'), **dict.fromkeys(APOSTROPHES, "'")})

# Genitive month names as used in "1. siječnja 2025."
CROATIAN_MONTHS = (
    "siječnja",
    "veljače",
    "ožujka",
    "travnja",
    "svibnja",
    "lipnja",
    "srpnja",
    "kolovoza",
    "rujna",
    "listopada",
    "studenoga",
    "prosinca",
)

NUMBER_TOKEN = re.compile(r"\d+(?:[.,]\d+)*")
SPACED_NUMBER_TOKEN = re.compile(r"\d{1,3}(?:[ \u00a0]\d{3})+(?:,\d+)?")
CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£", "HRK": "kn"}


@dataclass(frozen=True)
class QuoteMatch:
    match_type: str  # exact | normalized | not_found
    start: int | None = None
    end: int | None = None

    @property
    def found(self) -> bool:
        return self.match_type != "not_found"


def _normalize_char(ch: str) -> str:
    ch = unicodedata.normalize("NFKC", ch)
    return ch.replace("\u00a0", " ").replace("\u00ad", "").translate(QUOTE_TABLE)


def normalize_with_offsets(text: str) -> tuple[str, list[int]]:
    """Normalize ``text`` and map each output character to its source index."""
    chars: list[str] = []
    offsets: list[int] = []
    for index, original in enumerate(text):
        for ch in _normalize_char(original):
            if ch.isspace():
                if not chars or chars[-1] == " ":
                    continue
                ch = " "
            chars.append(ch)
            offsets.append(index)

    if chars and chars[-1] == " ":
        chars.pop()
        offsets.pop()
    return "".join(chars), offsets


def normalize_for_match(text: str) -> str:
    return normalize_with_offsets(text)[0]


def find_quote_in_evidence(content: str, quote: str) -> QuoteMatch:
    """Locate ``quote`` in ``content``; offsets always refer to the original content."""
    if not content or not quote:
        return QuoteMatch("not_found")

    index = content.find(quote)
    if index != -1:
        return QuoteMatch("exact", index, index + len(quote))

    normalized_quote = normalize_for_match(quote)
    if not normalized_quote:
        return QuoteMatch("not_found")

    normalized_content, offsets = normalize_with_offsets(content)
    index = normalized_content.find(normalized_quote)
    if index == -1:
        return QuoteMatch("not_found")

    last = index + len(normalized_quote) - 1
    return QuoteMatch("normalized", offsets[index], offsets[last] + 1)


def date_renderings(iso_value: str) -> list[str]:
    """Ways a date is commonly written in Croatian legal text."""
    try:
        d = date.fromisoformat(iso_value.strip())
    except ValueError:
        return [iso_value]
    month = CROATIAN_MONTHS[d.month - 1]
    return [
        d.isoformat(),
        f"{d.day}.{d.month}.{d.year}",
        f"{d.day:02d}.{d.month:02d}.{d.year}",
        f"{d.day}.{d.month:02d}.{d.year}",
        f"{d.day}. {d.month}. {d.year}",
        f"{d.day}. {month} {d.year}",
        f"{d.day}. {month.removesuffix('a')} {d.year}",  # "studenog"
        f"{d.day}/{d.month:02d}/{d.year}",
    ]


def _numbers_in(quote: str) -> list[float]:
    numbers = []
    for token in SPACED_NUMBER_TOKEN.findall(quote) + NUMBER_TOKEN.findall(quote):
        parsed = parse_number(token)
        if parsed is not None:
            numbers.append(parsed)
        # "1.5" may be a decimal even where "1.500" would group thousands
        if token.count(".") + token.count(",") == 1:
            try:
                numbers.append(float(token.replace(",", ".")))
            except ValueError:
                pass
    return numbers


def value_in_quote(value: str, value_type: str, quote: str) -> bool:
    """True when the extracted value is literally present in its quote."""
    normalized_quote = normalize_for_match(quote).lower()

    if value_type == "date":
        compact = normalized_quote.replace(" ", "")
        return any(
            r.lower() in normalized_quote or r.lower().replace(" ", "") in compact
            for r in date_renderings(value)
        )

    if value_type in NUMERIC_TYPES:
        target = parse_number(value)
        if target is None:
            return False
        tolerance = 1e-9 * max(1.0, abs(target))
        return any(abs(n - target) <= tolerance for n in _numbers_in(normalized_quote))

    if value_type == "currency_code":
        code = value.strip().upper()
        symbol = CURRENCY_SYMBOLS.get(code)
        return code.lower() in normalized_quote or (symbol is not None and symbol in normalized_quote)

    return True
