"""Error taxonomy shared by the ledger, the job orchestrator and the model clients.

Every caller-facing error carries a stable ``kind`` string so an outer layer can
map it to a response code without matching on exception classes.
"""


class ConversionError(RuntimeError):
    kind = "INTERNAL_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidInputError(ConversionError):
    kind = "INVALID_INPUT"


class InsufficientCreditsError(ConversionError):
    kind = "INSUFFICIENT_CREDITS"


class AnonymousLimitReachedError(ConversionError):
    kind = "ANONYMOUS_LIMIT_REACHED"


class AccountNotFoundError(ConversionError):
    kind = "USER_NOT_FOUND"


class JobNotFoundError(ConversionError):
    kind = "NOT_FOUND"


class LedgerConflictError(ConversionError):
    kind = "LEDGER_CONFLICT"


class ModelError(RuntimeError):
    pass


class QuotaExceededError(ModelError):
    kind = "QUOTA_EXCEEDED"


_RESERVE_ERRORS: dict[str, type[ConversionError]] = {
    InsufficientCreditsError.kind: InsufficientCreditsError,
    AnonymousLimitReachedError.kind: AnonymousLimitReachedError,
    AccountNotFoundError.kind: AccountNotFoundError,
}


def error_for_kind(kind: str | None, message: str | None = None) -> ConversionError:
    cls = _RESERVE_ERRORS.get(kind or "", ConversionError)
    return cls(message)
