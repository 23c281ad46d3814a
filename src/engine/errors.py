"""Error taxonomy for the provisioning engine.

Every engine error carries a short code so CLI output and run reports
can be grepped:

- E1xx ValidationError: bad variable value, malformed stack or expression
- E2xx GraphError: dependency cycle, reference to unknown address
- E3xx ConflictError: state version mismatch or stale plan
- E4xx ProviderError: remote API rejected a call
- E5xx DriftError: recorded state disagrees with the remote system
- E6xx PreconditionError: credentials missing, state unreachable
"""


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ValidationError(EngineError):
    """Invalid input detected before any remote call."""

    def __init__(self, message: str, code: str = "E100"):
        super().__init__(code, message)


class GraphError(EngineError):
    """Dependency graph could not be built."""

    def __init__(self, message: str, code: str = "E200", cycle: list[str] | None = None):
        super().__init__(code, message)
        self.cycle = cycle or []


class ConflictError(EngineError):
    """Concurrent modification of state detected."""

    def __init__(self, message: str, code: str = "E300"):
        super().__init__(code, message)


class ProviderError(EngineError):
    """Remote resource-management API rejected or failed a call."""

    def __init__(self, message: str, code: str = "E400", status: int | None = None):
        super().__init__(code, message)
        self.status = status


class NotFoundError(ProviderError):
    """Remote resource does not exist."""

    def __init__(self, resource_id: str):
        super().__init__(f"Resource not found: {resource_id}", code="E404", status=404)
        self.resource_id = resource_id


class TransientProviderError(ProviderError):
    """Timeout talking to the provider; safe to retry for reads and polls."""

    def __init__(self, message: str):
        super().__init__(message, code="E408")


class DriftError(EngineError):
    """Recorded attributes differ from what the provider reports."""

    def __init__(self, address: str, message: str):
        super().__init__("E500", f"{address}: {message}")
        self.address = address


class PreconditionError(EngineError):
    """A phase precondition (credentials, state store) is not met."""

    def __init__(self, message: str, code: str = "E600"):
        super().__init__(code, message)
