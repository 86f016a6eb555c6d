"""Exception taxonomy for the try-on pipeline.

Recoverable errors (ParseError, NoImageDataError) are absorbed close to
where they are raised; the rest propagate to the coordinator or the caller.
"""

from typing import Optional


class TryOnError(Exception):
    """Base class for all pipeline errors."""

    public_message = "Try-on processing failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ConfigurationError(TryOnError):
    """Missing or invalid credential / setting."""

    public_message = "Service is not configured"


class ValidationError(TryOnError):
    """Oversized or undecodable image, bad request payload."""

    public_message = "Invalid input"


class ImageLoadError(ValidationError):
    """Image payload could not be decoded (or decode timed out)."""

    public_message = "Failed to load image"


class InvalidRegionError(ValidationError):
    """Crop region exceeds the source image bounds."""

    public_message = "Invalid crop area"


class NetworkError(TryOnError):
    """Transport or service failure talking to the generation service."""

    public_message = "Generation service request failed"


class ParseError(TryOnError):
    """Structured response could not be decoded."""

    public_message = "Could not parse service response"

    def __init__(self, message: Optional[str] = None, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class SafetyRejectionError(TryOnError):
    """Safety check returned an explicit reject verdict."""

    public_message = "Image rejected by safety check"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        subject: str = "image",
        concerns: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.subject = subject
        self.concerns = list(concerns or [])


class NoImageDataError(TryOnError):
    """Service response carried no usable image data."""

    public_message = "No image data in service response"


class StorageError(TryOnError):
    """Persistence backend failure."""

    public_message = "Failed to persist data"


class NotFoundError(TryOnError):
    """Referenced record does not exist."""

    public_message = "Record not found"
