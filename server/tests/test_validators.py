"""
Signer and national identity number validation tests.
"""

import pytest

from utilitysign.services.validators import (
    SignerValidationError,
    build_title,
    clean_national_id,
    format_national_id,
    is_valid_national_id,
    normalize_extra_claims,
    validate_signer,
)


class TestSignerValidation:
    def test_trims_and_returns_signer(self):
        signer = validate_signer("  Ada Lovelace ", " ada@example.no ")
        assert signer.name == "Ada Lovelace"
        assert signer.email == "ada@example.no"

    def test_collects_all_field_errors(self):
        with pytest.raises(SignerValidationError) as exc_info:
            validate_signer("A", "not-an-email")
        assert set(exc_info.value.errors) == {"name", "email"}

    def test_missing_email(self):
        with pytest.raises(SignerValidationError) as exc_info:
            validate_signer("Ada Lovelace", None)
        assert exc_info.value.errors == {"email": ["Signer email is required"]}


class TestTitle:
    def test_default_title(self):
        assert build_title("Ada") == "Signing Request for Ada"

    def test_long_title_is_truncated_with_ellipsis(self):
        title = build_title("x" * 300, max_length=50)
        assert len(title) == 50
        assert title.endswith("...")


class TestNationalId:
    def test_valid_number(self):
        assert is_valid_national_id("15076500565") is True
        assert is_valid_national_id("150765 005 65") is True

    @pytest.mark.parametrize("value", ["15076500566", "1507650056", "abcdefghijk", "32076500565", ""])
    def test_invalid_numbers(self, value):
        assert is_valid_national_id(value) is False

    def test_clean_and_format(self):
        assert clean_national_id("150765-005.65") == "15076500565"
        assert format_national_id("15076500565") == "150765 005 65"
        assert format_national_id("123") == "123"


class TestExtraClaims:
    def test_blank_values_are_dropped(self):
        assert normalize_extra_claims({"phone": "  ", "company": " Acme ", "ref": None, "count": 2}) == {
            "company": "Acme",
            "count": 2,
        }

    def test_national_id_is_normalized(self):
        assert normalize_extra_claims({"national_id": "150765 005 65"}) == {"national_id": "15076500565"}

    def test_invalid_national_id_is_rejected(self):
        with pytest.raises(SignerValidationError) as exc_info:
            normalize_extra_claims({"national_id": "15076500566"})
        assert "national_id" in exc_info.value.errors

    def test_no_claims(self):
        assert normalize_extra_claims(None) == {}
