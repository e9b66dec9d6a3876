"""
Error taxonomy for the Ollama client.

Transport, HTTP status, decode, stream and cancellation failures all derive
from OllamaError so callers can catch the whole family at once.
"""


class OllamaError(Exception):
    """Base exception for Ollama client errors."""

    pass


class NoServerSelectedError(OllamaError):
    """No Ollama host is configured or selected."""

    def __init__(self, message: str = "Error: No Ollama server selected."):
        super().__init__(message)


# =============================================================================
# Transport
# =============================================================================


class OllamaTransportError(OllamaError):
    """Connection refused, timeout, lost connection or reset session."""

    pass


class OllamaTLSError(OllamaTransportError):
    """Secure connection could not be established (certificate/TLS failure)."""

    pass


# =============================================================================
# Protocol
# =============================================================================


class OllamaHTTPStatusError(OllamaError):
    """Server answered with a non-success status code."""

    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        self.message = message
        detail = f"HTTP Status Code {status_code}"
        if message:
            detail = f"{detail} - {message}"
        super().__init__(detail)


class OllamaDecodeError(OllamaError):
    """Malformed JSON or a payload that does not match the expected schema."""

    def __init__(self, message: str, payload: str | bytes | None = None):
        self.payload = payload
        super().__init__(message)


class LineDecodeError(OllamaDecodeError):
    """Received bytes could not be decoded as UTF-8 text."""

    pass


class OllamaStreamError(OllamaError):
    """The server reported an error envelope inside a streaming response."""

    def __init__(self, message: str, payload: str | None = None):
        self.payload = payload
        super().__init__(message)


# =============================================================================
# Cancellation
# =============================================================================


class StreamCancelledError(OllamaError):
    """A stream was cancelled by the user or superseded by a newer request."""

    pass
