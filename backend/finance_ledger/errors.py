"""Domain errors raised by the ledger and its services.

Each error carries the HTTP status the API answers with; the handlers in
``main`` render all of them as ``{"error": message}``.
"""


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidReference(LedgerError):
    """An account or category that does not belong to the acting user."""


class InvalidTransfer(LedgerError):
    """Same-account transfer, non-positive amount or a broken transfer pair."""


class InvalidRequest(LedgerError):
    pass


class EmailAlreadyRegistered(LedgerError):
    pass


class InvalidCredentials(LedgerError):
    pass


class InvalidToken(LedgerError):
    pass


class Unauthorized(LedgerError):
    status_code = 401


class AccessDenied(LedgerError):
    status_code = 403


class NotFound(LedgerError):
    status_code = 404


class Conflict(LedgerError):
    status_code = 409


class AtomicityFailure(LedgerError):
    """The store aborted a unit of work; nothing from it was committed."""

    status_code = 500


class CollaboratorFailure(LedgerError):
    status_code = 500
