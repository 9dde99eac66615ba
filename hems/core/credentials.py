"""
Phase 1 credential derivation.

A student's first-phase password is the first four characters of their
institutional id number followed by a fixed calendar-year suffix. This is a
business rule, not a cryptographic one, and must be reproduced exactly.
"""

DEFAULT_YEAR_SUFFIX = "18"
ID_PREFIX_LENGTH = 4


def derive_phase1_password(id_number: str, year_suffix: str = DEFAULT_YEAR_SUFFIX) -> str:
    """Return the Phase 1 password for ``id_number``.

    Ids shorter than four characters are used whole. An empty id yields an
    empty string.
    """
    if not id_number:
        return ""
    return id_number[:ID_PREFIX_LENGTH] + year_suffix
