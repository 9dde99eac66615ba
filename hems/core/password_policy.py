"""
Password strength policy.

Every rule runs on every call so a caller can show all failures at once.
"""

import enum
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .results import WeakPasswordReason

MINIMUM_LENGTH = 8
MAXIMUM_LENGTH = 128

WEAK_SUBSTRINGS = (
    "password",
    "123456",
    "qwerty",
    "abc123",
    "admin",
    "user",
    "test",
    "guest",
    "welcome",
    "login",
    "pass",
    "root",
)

_UPPERCASE = re.compile(r"[A-Z]")
_LOWERCASE = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_SEQUENTIAL = re.compile(
    r"(012|123|234|345|456|567|678|789|890|abc|bcd|cde|def|efg|fgh|ghi|hij|ijk"
    r"|jkl|klm|lmn|mno|nop|opq|pqr|qrs|rst|stu|tuv|uvw|vwx|wxy|xyz)"
)
_REPEATED = re.compile(r"(.)\1{2,}")


class Violation(enum.Enum):
    REQUIRED = "required"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    MISSING_UPPERCASE = "missing_uppercase"
    MISSING_LOWERCASE = "missing_lowercase"
    MISSING_DIGIT = "missing_digit"
    MISSING_SPECIAL = "missing_special"
    WEAK_SUBSTRING = "weak_substring"
    SEQUENTIAL_CHARACTERS = "sequential_characters"
    REPEATED_CHARACTERS = "repeated_characters"


VIOLATION_MESSAGES = {
    Violation.REQUIRED: "Password is required.",
    Violation.TOO_SHORT: f"Password must be at least {MINIMUM_LENGTH} characters long.",
    Violation.TOO_LONG: f"Password must not exceed {MAXIMUM_LENGTH} characters.",
    Violation.MISSING_UPPERCASE: "Password must contain at least one uppercase letter.",
    Violation.MISSING_LOWERCASE: "Password must contain at least one lowercase letter.",
    Violation.MISSING_DIGIT: "Password must contain at least one digit.",
    Violation.MISSING_SPECIAL: "Password must contain at least one special character.",
    Violation.WEAK_SUBSTRING: "Password contains a common word or pattern.",
    Violation.SEQUENTIAL_CHARACTERS: "Password must not contain 3 or more sequential characters.",
    Violation.REPEATED_CHARACTERS: "Password must not repeat a character 3 or more times in a row.",
}

_MISSING_CLASS = {
    Violation.MISSING_UPPERCASE,
    Violation.MISSING_LOWERCASE,
    Violation.MISSING_DIGIT,
    Violation.MISSING_SPECIAL,
}
_WEAK_PATTERN = {
    Violation.WEAK_SUBSTRING,
    Violation.SEQUENTIAL_CHARACTERS,
    Violation.REPEATED_CHARACTERS,
}


@dataclass
class ValidationOutcome:
    ok: bool
    violations: List[Violation] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        return [VIOLATION_MESSAGES[v] for v in self.violations]

    @property
    def reason(self) -> Optional[WeakPasswordReason]:
        """Most significant sub-reason, for callers that report only one."""
        violations = set(self.violations)
        if violations & {Violation.REQUIRED, Violation.TOO_SHORT}:
            return WeakPasswordReason.TOO_SHORT
        if Violation.TOO_LONG in violations:
            return WeakPasswordReason.TOO_LONG
        if violations & _MISSING_CLASS:
            return WeakPasswordReason.MISSING_CHARACTER_CLASS
        if violations & _WEAK_PATTERN:
            return WeakPasswordReason.WEAK_PATTERN
        return None


def validate(password: Optional[str]) -> ValidationOutcome:
    """Check ``password`` against every strength rule."""
    if password is None or not password.strip():
        return ValidationOutcome(ok=False, violations=[Violation.REQUIRED])

    violations: List[Violation] = []
    if len(password) < MINIMUM_LENGTH:
        violations.append(Violation.TOO_SHORT)
    if len(password) > MAXIMUM_LENGTH:
        violations.append(Violation.TOO_LONG)
    if not _UPPERCASE.search(password):
        violations.append(Violation.MISSING_UPPERCASE)
    if not _LOWERCASE.search(password):
        violations.append(Violation.MISSING_LOWERCASE)
    if not _DIGIT.search(password):
        violations.append(Violation.MISSING_DIGIT)
    if not _SPECIAL.search(password):
        violations.append(Violation.MISSING_SPECIAL)

    lowered = password.lower()
    if any(weak in lowered for weak in WEAK_SUBSTRINGS):
        violations.append(Violation.WEAK_SUBSTRING)
    if _SEQUENTIAL.search(lowered):
        violations.append(Violation.SEQUENTIAL_CHARACTERS)
    if _REPEATED.search(password):
        violations.append(Violation.REPEATED_CHARACTERS)

    return ValidationOutcome(ok=not violations, violations=violations)
