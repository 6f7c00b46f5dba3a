from typing import Optional


class CashuPayError(Exception):
    code: int
    detail: str

    def __init__(self, detail, code=0):
        super().__init__(detail)
        self.code = code
        self.detail = detail


class StoreNotFoundError(CashuPayError):
    detail = "store not found"
    code = 30001

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class StoreNotConfiguredError(CashuPayError):
    detail = "store has no mint or seed configured"
    code = 30002

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class NetworkUnreachableError(CashuPayError):
    """Remote endpoint could not be reached (connection refused, DNS, TLS)."""

    detail = "remote endpoint unreachable"
    code = 40000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class MintTimeoutError(NetworkUnreachableError):
    detail = "request to mint timed out"
    code = 40001


class AllMintsUnreachableError(CashuPayError):
    code = 40002

    def __init__(self, last_error: Optional[Exception] = None):
        self.last_error = last_error
        super().__init__(
            "Failed to get mint quote from all configured mints."
            f" Last error: {last_error}",
            code=self.code,
        )


class ProtocolError(CashuPayError):
    """The mint answered with a structured rejection."""

    detail = "mint rejected the request"
    code = 41000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class ProofsAlreadySpentError(ProtocolError):
    detail = "Token already spent."
    code = 11001


class ValidationError(CashuPayError):
    detail = "invalid request"
    code = 42000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class BalanceTooLowError(ValidationError):
    detail = "balance too low"
    code = 42001


class InvalidDestinationError(ValidationError):
    detail = "invalid payment destination"
    code = 42002


class UnsupportedCurrencyError(ValidationError):
    detail = "currency not supported"
    code = 42003


class InternalInconsistencyError(CashuPayError):
    detail = "internal inconsistency"
    code = 43000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class InvalidTransitionError(InternalInconsistencyError):
    detail = "invalid status transition"
    code = 43001


class MeltError(CashuPayError):
    detail = "payment failed"
    code = 44000

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class MeltPendingError(MeltError):
    detail = "payment pending"
    code = 44001
