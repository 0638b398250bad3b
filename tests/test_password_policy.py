"""Unit tests for the password policy validator."""

import pytest

from opsauth.service.password_policy import PasswordPolicyValidator


@pytest.fixture
def validator(settings):
    return PasswordPolicyValidator(settings)


class TestPasswordPolicy:
    """Each rule is reported on its own."""

    def test_strong_password_passes(self, validator):
        result = validator.validate("Valve-Control#42")

        assert result.ok is True
        assert result.violations == []

    @pytest.mark.parametrize("value", ["", None])
    def test_empty_input_has_single_violation(self, validator, value):
        result = validator.validate(value)

        assert result.ok is False
        assert len(result.violations) == 1

    def test_reports_every_failed_rule(self, validator):
        """A short all-lowercase password fails length, upper, digit and special."""
        result = validator.validate("short")

        assert result.ok is False
        assert len(result.violations) == 4
        assert any("12 characters" in v for v in result.violations)

    @pytest.mark.parametrize(
        "password", ["MyPassword#2024x", "Qwerty-Station#9", "xAdmin-Console#9", "Ab#1234567890"]
    )
    def test_weak_patterns_rejected_case_insensitively(self, validator, password):
        result = validator.validate(password)

        assert result.ok is False
        assert "Password contains a common weak pattern" in result.violations

    def test_flags_disable_character_classes(self, settings_factory):
        validator = PasswordPolicyValidator(
            settings_factory(
                password_min_length=4,
                require_uppercase=False,
                require_numbers=False,
                require_special_chars=False,
            )
        )

        assert validator.validate("plainwords").ok is True

    def test_describe_reflects_settings(self, validator):
        described = validator.describe()

        assert described["min_length"] == 12
        assert described["require_special_chars"] is True
