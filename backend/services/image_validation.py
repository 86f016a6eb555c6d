import base64
import binascii
import logging
import re
from dataclasses import dataclass
from io import BytesIO
from typing import Union

from PIL import Image, UnidentifiedImageError

from services.errors import ImageLoadError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/webp"})
MAX_UPLOAD_SIZE_BYTES = 10 * 1024 * 1024  # 10MB
MIN_IMAGE_WIDTH = 32
MIN_IMAGE_HEIGHT = 32
MAX_IMAGE_WIDTH = 8192
MAX_IMAGE_HEIGHT = 8192
MAX_IMAGE_PIXELS = 16_777_216  # 16 MP
MAX_ASPECT_RATIO = 8.0

IMAGE_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-jpg": "image/jpeg",
    "image/x-jpeg": "image/jpeg",
    "image/jfif": "image/jpeg",
    "image/apng": "image/png",
    "image/x-png": "image/png",
    "image/x-webp": "image/webp",
}

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(?P<params>(?:;[^,]*)?),(?P<data>.*)$", re.S)

ImageInput = Union[bytes, bytearray, str]


@dataclass(frozen=True)
class ImagePayloadInfo:
    mime_type: str
    width: int
    height: int


def normalize_image_mime_type(claimed_mime_type: str) -> str:
    mime_type = (claimed_mime_type or "").strip()
    if not mime_type:
        return ""

    # Some clients send comma-joined or parameterised values.
    if "," in mime_type:
        mime_type = mime_type.split(",", 1)[0].strip()
    if ";" in mime_type:
        mime_type = mime_type.split(";", 1)[0].strip()

    mime_type = mime_type.strip().strip("'\"").lower()
    return IMAGE_MIME_ALIASES.get(mime_type, mime_type)


def sniff_image_mime_type(content: bytes) -> str | None:
    """
    Best-effort MIME sniffing by magic bytes.

    Returns normalized mime_type ("image/png", "image/jpeg", "image/webp",
    "image/gif") or None.
    """
    if not content:
        return None
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if content.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if len(content) >= 12 and content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    if content[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return None


def split_data_url(value: str) -> tuple[str, str]:
    """Split a ``data:`` URL into (mime_type, base64 payload)."""
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        raise ImageLoadError("Invalid data URL provided for image input")
    mime_type = normalize_image_mime_type(match.group("mime") or "")
    return mime_type, match.group("data").strip()


def decode_image_input(payload: ImageInput) -> tuple[bytes, str | None]:
    """
    Normalize an image payload to raw bytes.

    Accepts raw bytes, a ``data:image/...;base64,`` URL, or a bare base64
    string. Returns ``(bytes, declared_mime_type_or_None)``.
    """
    if isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
        if not data:
            raise ImageLoadError("Empty image payload")
        return data, None

    if not isinstance(payload, str):
        raise ImageLoadError(f"Unsupported image payload type: {type(payload).__name__}")

    cleaned = payload.strip()
    if not cleaned:
        raise ImageLoadError("Empty image payload")

    declared: str | None = None
    if cleaned.startswith("data:"):
        declared, cleaned = split_data_url(cleaned)

    try:
        data = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageLoadError("Provided image string is not valid base64") from exc

    if not data:
        raise ImageLoadError("Empty image payload")
    return data, declared or None


def to_data_url(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def _detect_image_dimensions(content: bytes) -> tuple[int, int]:
    try:
        with Image.open(BytesIO(content)) as image:
            image.load()
            width, height = image.size
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageLoadError(
            "Unsupported or corrupted image file. Please use PNG, JPG, or WEBP."
        ) from exc

    if width <= 0 or height <= 0:
        raise ValidationError("Invalid image dimensions")
    return width, height


def validate_uploaded_image_payload(
    payload: ImageInput,
    claimed_mime_type: str | None = None,
    *,
    max_bytes: int = MAX_UPLOAD_SIZE_BYTES,
    min_width: int = MIN_IMAGE_WIDTH,
    min_height: int = MIN_IMAGE_HEIGHT,
    max_width: int = MAX_IMAGE_WIDTH,
    max_height: int = MAX_IMAGE_HEIGHT,
    max_pixels: int = MAX_IMAGE_PIXELS,
    max_aspect_ratio: float = MAX_ASPECT_RATIO,
) -> ImagePayloadInfo:
    """
    Validate image bytes before they enter the pipeline.

    Rules:
    - Accept PNG/JPEG/WEBP by actual magic bytes (preferred over the claim).
    - Reject oversized payloads before decoding.
    - Reject tiny or extreme-aspect images that are unusable for try-on.
    """
    content, declared_mime = decode_image_input(payload)

    if len(content) > max_bytes:
        raise ValidationError(
            f"Image too large ({round(len(content) / 1024 / 1024)}MB). "
            f"Maximum size is {max_bytes // (1024 * 1024)}MB."
        )

    if len(content) < 12:
        raise ValidationError("File too small to be a valid image")

    normalized_claimed = normalize_image_mime_type(claimed_mime_type or declared_mime or "")
    sniffed_mime = sniff_image_mime_type(content)

    resolved_mime = sniffed_mime
    if not resolved_mime and normalized_claimed in ALLOWED_IMAGE_MIME_TYPES:
        resolved_mime = normalized_claimed

    if resolved_mime not in ALLOWED_IMAGE_MIME_TYPES:
        raise ValidationError("Invalid file type. Allowed: PNG, JPG, WEBP")

    if (
        normalized_claimed in ALLOWED_IMAGE_MIME_TYPES
        and sniffed_mime
        and normalized_claimed != sniffed_mime
    ):
        logger.warning(
            "Claimed MIME type mismatch (claimed=%s, sniffed=%s); using sniffed MIME",
            normalized_claimed,
            sniffed_mime,
        )

    width, height = _detect_image_dimensions(content)

    if width < min_width or height < min_height:
        raise ValidationError(
            f"Image is too small ({width}x{height}). "
            f"Minimum supported size is {min_width}x{min_height}."
        )

    if width > max_width or height > max_height:
        raise ValidationError(
            f"Image is too large ({width}x{height}). "
            f"Maximum supported size is {max_width}x{max_height}."
        )

    total_pixels = width * height
    if total_pixels > max_pixels:
        raise ValidationError(
            f"Image has too many pixels ({total_pixels}). "
            f"Maximum supported pixel count is {max_pixels}."
        )

    longer = max(width, height)
    shorter = max(1, min(width, height))
    if (longer / shorter) > max_aspect_ratio:
        raise ValidationError(
            f"Unsupported aspect ratio ({width}x{height}). "
            f"Maximum supported ratio is {max_aspect_ratio}:1."
        )

    return ImagePayloadInfo(mime_type=resolved_mime, width=width, height=height)
