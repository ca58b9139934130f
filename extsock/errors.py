"""Error taxonomy shared by the codec, translator, dispatcher and backends."""


class ExtsockError(Exception):
    """Base class for request-level failures reported back to clients."""

    code = "daemon-api-error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DecodeError(ExtsockError):
    """Malformed wire input. The connection stays open."""

    code = "malformed-request"


class ValidationError(ExtsockError):
    """Structurally invalid connection document."""

    code = "config-invalid"

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class DaemonApiError(ExtsockError):
    """The IKE daemon rejected or failed an operation."""

    code = "daemon-api-error"


class RetryExceeded(ExtsockError):
    """Failover ceiling reached, or no alternative gateway exists."""

    code = "retry-exceeded"

    def __init__(self, name: str, address: str = None):
        self.name = name
        self.address = address
        super().__init__(f"No further gateway for connection '{name}'")


class NotFound(ExtsockError):
    code = "not-found"


class Busy(ExtsockError):
    code = "busy"


class StartupError(Exception):
    """Fatal: the control socket could not be bound."""
