"""Input normalization and field validation."""

import pytest

from festauth.service.errors import AuthError
from festauth.service.validation import (
    normalize_email,
    normalize_unicode,
    require_token,
    validate_display_name,
    validate_email,
    validate_password,
    validate_user_type,
)
from festauth.storage.models import UserType


def _field(exc_info):
    return exc_info.value.field


class TestNormalization:
    def test_email_trimmed_and_lowercased(self):
        assert normalize_email("  Fan@Example.COM ") == "fan@example.com"

    def test_email_is_case_folded(self):
        assert normalize_email("Stra\u00dfe@Example.com") == "strasse@example.com"

    def test_zero_width_and_bidi_removed(self):
        assert normalize_unicode("fa\u200bn\u202e") == "fan"

    def test_nfkc_folds_compatibility_forms(self):
        assert normalize_email("\uff46\uff41\uff4e@example.com") == "fan@example.com"

    def test_non_string_normalizes_to_empty(self):
        assert normalize_email(None) == ""


class TestEmail:
    @pytest.mark.parametrize(
        "value", ["fan@example.com", "first.last+tag@sub.example.org", "A@X.CO"]
    )
    def test_valid(self, value):
        assert validate_email(value) == value.lower()

    @pytest.mark.parametrize(
        "value",
        ["", "   ", "plain", "@example.com", "fan@", "fan@localhost", "fan@-bad.com", "a b@x.com", None],
    )
    def test_invalid(self, value):
        with pytest.raises(AuthError) as exc_info:
            validate_email(value)
        assert _field(exc_info) == "email"

    def test_too_long(self):
        with pytest.raises(AuthError):
            validate_email("a" * 64 + "@" + ("b" * 60 + ".") * 4 + "com")


class TestPassword:
    def test_bounds(self):
        assert validate_password("x" * 12) == "x" * 12
        assert validate_password("x" * 128) == "x" * 128
        with pytest.raises(AuthError):
            validate_password("x" * 11)
        with pytest.raises(AuthError):
            validate_password("x" * 129)

    def test_custom_field_name(self):
        with pytest.raises(AuthError) as exc_info:
            validate_password("", field="new_password")
        assert _field(exc_info) == "new_password"


class TestOtherFields:
    def test_display_name_trimmed(self):
        assert validate_display_name("  Stage Crew  ") == "Stage Crew"

    @pytest.mark.parametrize("value", ["", " x ", "y" * 101])
    def test_display_name_invalid(self, value):
        with pytest.raises(AuthError) as exc_info:
            validate_display_name(value)
        assert _field(exc_info) == "display_name"

    def test_user_type(self):
        assert validate_user_type(" ORGANIZER ") is UserType.ORGANIZER
        assert validate_user_type(UserType.ATTENDEE) is UserType.ATTENDEE
        with pytest.raises(AuthError):
            validate_user_type("admin")

    def test_require_token(self):
        assert require_token("  abc ") == "abc"
        with pytest.raises(AuthError) as exc_info:
            require_token("", field="refresh_token")
        assert _field(exc_info) == "refresh_token"
