"""
Domain Error Taxonomy

Every rejected request in the ledger core is raised as one of these errors.
The HTTP layer maps ``http_status`` and ``code`` onto the JSON response.
"""


class BankingError(Exception):
    """Base class for all domain errors"""
    code = "banking_error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BankingError):
    """Malformed or out-of-range input"""
    code = "validation_error"
    http_status = 400


class AuthenticationError(BankingError):
    """A secret (PIN, AML code, token) did not match"""
    code = "authentication_failed"
    http_status = 401


class AuthorizationError(BankingError):
    """Caller may not act on this resource"""
    code = "forbidden"
    http_status = 403


class NotFoundError(BankingError):
    """Referenced entity does not exist (or is soft-deleted)"""
    code = "not_found"
    http_status = 404


class InvalidStateTransitionError(BankingError):
    """Entity is not in a state that allows the requested transition"""
    code = "invalid_state"
    http_status = 409


class InsufficientFundsError(BankingError):
    """Debit would take an account below zero"""
    code = "insufficient_funds"
    http_status = 400


class ConcurrencyError(BankingError):
    """Optimistic version check failed; the record changed underneath us"""
    code = "concurrent_modification"
    http_status = 409


class AuditWriteError(BankingError):
    """Audit row could not be persisted; the guarded mutation is rolled back"""
    code = "audit_write_failed"
    http_status = 500
