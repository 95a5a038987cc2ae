"""Error kinds raised by the web-form MAC and gateway code."""


class WebFormError(Exception):
    """Base class for all gateway errors."""


class ConfigurationError(WebFormError):
    """Raised when the MAC secret or algorithm is unusable. Fatal at startup."""


class InvalidRequestError(WebFormError):
    """Raised for malformed or missing request / callback parameters."""


class ExpiredFormError(WebFormError):
    """Raised when a web form is submitted after its timeout has elapsed."""

    def __init__(self, timeout_sec: int) -> None:
        super().__init__(f"Web form timed out ({timeout_sec} seconds)")
        self.timeout_sec = timeout_sec


class MacMismatchError(WebFormError):
    """Raised when a presented MAC does not match the one computed for the request."""

    def __init__(self) -> None:
        super().__init__("HMAC validation failure")


class DestroyFailedError(WebFormError):
    """Raised when secret key material could not be cleared from memory."""
