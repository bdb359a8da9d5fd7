"""Custom exceptions for ratewarden."""


class RateWardenError(Exception):
    """Base class for ratewarden exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class BackendUnavailableError(RateWardenError):
    """Raised when the shared counting store cannot be reached or times out.

    Never converted to allow or deny inside the engine; the HTTP adapter
    decides whether to fail open or fail closed.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        message = f"Counting backend unavailable during {operation}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class InvalidConfigurationError(RateWardenError, ValueError):
    """Raised at construction time for a malformed limiter configuration.

    Covers non-positive window lengths, malformed tier tables, resolver
    callbacks that are not callable and a shared backend without a client.
    """
    status_code = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid rate limiter configuration: {detail}")


class StrategyError(RateWardenError):
    """Raised when an injected tier resolver or key generator fails.

    Handled by the HTTP adapter with the same fail-open / fail-closed
    policy as ``BackendUnavailableError``.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, strategy: str, detail: str):
        self.strategy = strategy
        super().__init__(f"{strategy} failed: {detail}")
