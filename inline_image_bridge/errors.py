"""Error kinds raised across the image generation pipeline."""

from typing import Optional

# Substrings that mark a failure as transient. Checked against the error text.
RETRYABLE_MARKERS = ("429", "502", "503", "504", "timeout", "network")


class ImageGenError(Exception):
    """Base class for every pipeline error."""


class ConfigurationInvalid(ImageGenError):
    """Required settings are missing. Raised before any network call."""

    def __init__(self, missing: list, message: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(message or f"Settings error: {', '.join(self.missing)}")


class BackendError(ImageGenError):
    pass


class BackendHttpError(BackendError):
    """Non-2xx response from an image backend."""

    def __init__(self, status: int, body: str, provider: str = ""):
        self.status = status
        self.body = body
        self.provider = provider
        super().__init__(f"API Error ({status}): {body}")


class BackendTransportError(BackendError):
    """The request never produced a response (timeout or network failure)."""


class BackendProtocolError(BackendError):
    """2xx response that carried no recoverable image data."""


class ScanParseError(ImageGenError):
    """Directive payload could not be parsed."""

    def __init__(self, message: str, snippet: str = ""):
        self.snippet = snippet
        super().__init__(message)


class AssetFetchError(ImageGenError):
    """A reference image or avatar could not be retrieved."""


class ImageSaveError(ImageGenError):
    """The generated image could not be downloaded or stored on the host."""


def is_retryable(error: BaseException) -> bool:
    text = str(error)
    return any(marker in text for marker in RETRYABLE_MARKERS)
