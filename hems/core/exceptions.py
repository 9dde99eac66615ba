"""
Custom exceptions for HEMS

Business-rule failures (wrong password, locked account, expired exam) are
returned as typed results from ``hems.core.results``. The exceptions below are
reserved for programming errors, misconfiguration and missing records that a
caller asked for by id.
"""


class HEMSException(Exception):
    """Base exception for all HEMS exceptions"""


class ConfigurationError(HEMSException):
    """Raised when there's a configuration error"""


class ValidationError(HEMSException):
    """Raised when validation fails"""


class AuthenticationError(HEMSException):
    """Raised when a token or credential cannot be validated"""


class AuthorizationError(HEMSException):
    """Raised when authorization fails"""


class DatabaseError(HEMSException):
    """Raised when there's a database error"""


class ExamNotFoundError(HEMSException):
    """Raised when an exam definition is not found"""


class AttemptNotFoundError(HEMSException):
    """Raised when an exam attempt is not found"""
