class LedgerError(Exception):
    """Base class for errors raised by ledgerflow services."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    status_code = 400


class NotFoundError(LedgerError):
    status_code = 404

    @classmethod
    def for_entity(cls, entity: str, entity_id: object) -> "NotFoundError":
        return cls(f"{entity} {entity_id} not found")


class AccessDeniedError(LedgerError):
    status_code = 401


class ServiceUnavailableError(LedgerError):
    """A downstream provider (LLM, bank API) failed; no retry is attempted."""

    status_code = 503
