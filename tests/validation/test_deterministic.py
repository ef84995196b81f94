"""Tests for deterministic claim checks."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from regwatch.storage.database.models import RejectionType
from regwatch.validation.deterministic import (
    parse_number,
    validate_claim_fields,
    validate_currency_code,
    validate_date,
    validate_value,
)


class TestParseNumber:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("40.000,00", 40000.0),
            ("1,234.5", 1234.5),
            ("25%", 25.0),
            ("12,5", 12.5),
            ("40.000", 40000.0),
            ("1.5", 1.5),
            ("1,000,000", 1000000.0),
            ("-3", -3.0),
            ("€ 1 500,00", 1500.0),
            ("39.816,84 EUR", 39816.84),
        ],
    )
    def test_formats(self, text, expected):
        assert parse_number(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", ["", "abc", "%", "1.2.3,4,5"])
    def test_unparseable(self, text):
        assert parse_number(text) is None

    def test_non_strings(self):
        assert parse_number(7) == 7.0
        assert parse_number(2.5) == 2.5
        assert parse_number(True) is None

    @given(st.integers(min_value=0, max_value=10**9))
    def test_plain_integers_round_trip(self, n):
        assert parse_number(str(n)) == float(n)


class TestValueChecks:
    @pytest.mark.parametrize(
        "value_type,value,domain,rejection",
        [
            ("percentage", "25", "pdv", None),
            ("percentage", "35", "pdv", RejectionType.OUT_OF_RANGE),
            ("percentage", "35", "doprinosi", None),
            ("percentage", "-1", "pdv", RejectionType.OUT_OF_RANGE),
            ("percentage", "pet", "pdv", RejectionType.VALIDATION_FAILED),
            ("interest_rate", "12,5", "interest_rates", None),
            ("interest_rate", "21", "interest_rates", RejectionType.OUT_OF_RANGE),
            ("exchange_rate", "7,5345", "exchange_rates", None),
            ("exchange_rate", "0", "exchange_rates", RejectionType.OUT_OF_RANGE),
            ("currency", "39.816,84", "pausalni", None),
            ("currency", "2.000.000", "pausalni", RejectionType.INVALID_CURRENCY),
            ("currency", "-5", "doprinosi", RejectionType.INVALID_CURRENCY),
            ("count", "3", "rokovi", None),
            ("count", "2,5", "rokovi", RejectionType.VALIDATION_FAILED),
            ("text", "bilo što", "obrasci", None),
        ],
    )
    def test_validate_value(self, value_type, value, domain, rejection):
        result = validate_value(value_type, value, domain)

        assert result.valid is (rejection is None)
        assert result.rejection_type == rejection

    @pytest.mark.parametrize(
        "value,valid",
        [
            ("2025-01-01", True),
            ("2025-02-30", False),
            ("01.01.2025", False),
            ("1989-12-31", False),
            ("2051-01-01", False),
        ],
    )
    def test_validate_date(self, value, valid):
        result = validate_date(value)

        assert result.valid is valid
        if not valid:
            assert result.rejection_type == RejectionType.INVALID_DATE

    def test_currency_codes(self):
        assert validate_currency_code("eur").valid is True
        assert validate_currency_code("XYZ").rejection_type == RejectionType.INVALID_CURRENCY


class TestValidateClaimFields:
    def test_domain_checked_first(self):
        result = validate_claim_fields("carina", "percentage", "500", "x", 2.0)

        assert result.rejection_type == RejectionType.VALIDATION_FAILED
        assert "Unknown domain" in result.errors[0]

    def test_confidence_bounds(self):
        result = validate_claim_fields("pdv", "percentage", "25", "Stopa PDV-a iznosi 25%", 1.2)

        assert "Confidence" in result.errors[0]

    def test_short_quote_carrying_the_value_is_accepted(self):
        assert validate_claim_fields("pdv", "vat_rate", "25", "25%", 0.97).valid

    @pytest.mark.parametrize("quote", ["", "  ", "13%", "PDV"])
    def test_short_quote_without_the_value(self, quote):
        result = validate_claim_fields("pdv", "percentage", "25", quote, 0.9)

        assert result.rejection_type == RejectionType.VALIDATION_FAILED
        assert "at least" in result.errors[0]

    def test_valid(self):
        assert validate_claim_fields("pdv", "percentage", "25", "Stopa PDV-a iznosi 25%", 0.9).valid
