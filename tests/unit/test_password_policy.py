"""
Unit tests for the password strength policy
"""

import pytest

from hems.core.password_policy import VIOLATION_MESSAGES, Violation, validate
from hems.core.results import WeakPasswordReason


class TestPasswordPolicy:
    def test_strong_password_accepted(self):
        outcome = validate("Tr0ub4dor&3")
        assert outcome.ok
        assert outcome.violations == []
        assert outcome.reason is None

    def test_common_password_reports_every_failure(self):
        outcome = validate("password")

        assert not outcome.ok
        assert set(outcome.violations) == {
            Violation.MISSING_UPPERCASE,
            Violation.MISSING_DIGIT,
            Violation.MISSING_SPECIAL,
            Violation.WEAK_SUBSTRING,
        }
        assert outcome.reason == WeakPasswordReason.MISSING_CHARACTER_CLASS
        assert VIOLATION_MESSAGES[Violation.WEAK_SUBSTRING] in outcome.messages

    @pytest.mark.parametrize("password", [None, "", "   "])
    def test_missing_password(self, password):
        outcome = validate(password)
        assert outcome.violations == [Violation.REQUIRED]
        assert outcome.reason == WeakPasswordReason.TOO_SHORT

    def test_length_bounds(self):
        assert Violation.TOO_SHORT in validate("Ab1!").violations
        too_long = validate("Ab1!" + "x" * 130)
        assert Violation.TOO_LONG in too_long.violations
        assert too_long.reason == WeakPasswordReason.TOO_LONG

    def test_sequential_characters(self):
        outcome = validate("Zx!7abcQm")
        assert outcome.violations == [Violation.SEQUENTIAL_CHARACTERS]
        assert outcome.reason == WeakPasswordReason.WEAK_PATTERN

    def test_repeated_characters(self):
        outcome = validate("Zx!7aaaQm")
        assert outcome.violations == [Violation.REPEATED_CHARACTERS]
