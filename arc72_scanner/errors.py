class ScannerError(Exception):
    """Base class for scanner failures."""


class ConfigError(ScannerError):
    pass


class NetworkError(ScannerError):
    """Endpoint unreachable, timed out, or answered with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class DecodeError(ScannerError):
    """Malformed block envelope, program, or address bytes."""


class VerificationRejected(ScannerError):
    """The verification service declined a candidate. A negative result, not a fault."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"verification rejected with HTTP {status}")
        self.status = status
        self.body = body
