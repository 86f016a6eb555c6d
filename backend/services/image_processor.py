"""
Image preparation routines.

Every function takes an encoded image payload (raw bytes, base64 string or
``data:image/...;base64,`` URL) and returns a new ``ProcessedImage``. Inputs
are never mutated; pixel math runs on numpy copies.
"""

import base64
import logging
import re
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from services.errors import ImageLoadError, InvalidRegionError, ValidationError
from services.image_validation import (
    ImageInput,
    decode_image_input,
    sniff_image_mime_type,
    to_data_url,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WIDTH = 1024
DEFAULT_MAX_HEIGHT = 1024
DEFAULT_QUALITY = 0.9
ENHANCE_MAX_DIMENSION = 2048
THUMBNAIL_SIZE = 150
THUMBNAIL_QUALITY = 0.8
COLOR_SAMPLE_SIZE = 100
OPAQUE_ALPHA_THRESHOLD = 128

# 3x3 kernels, weights sum to 1
SHARPEN_KERNEL = np.array(
    [
        [-0.25, -1.0, -0.25],
        [-1.0, 6.0, -1.0],
        [-0.25, -1.0, -0.25],
    ],
    dtype=np.float64,
)
SMOOTH_KERNEL = np.array(
    [
        [1.0, 2.0, 1.0],
        [2.0, 4.0, 2.0],
        [1.0, 2.0, 1.0],
    ],
    dtype=np.float64,
) / 16.0

_FORMAT_BY_MIME = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}
_MIME_BY_FORMAT = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}
_DATA_URL_FORMAT_RE = re.compile(r"data:image/([^;,]+)")


@dataclass(frozen=True)
class ProcessedImage:
    data: bytes
    mime_type: str
    width: int
    height: int
    original_width: Optional[int] = None
    original_height: Optional[int] = None

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


@dataclass(frozen=True)
class CropRegion:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class EnhanceOptions:
    brightness: float = 1.0
    contrast: float = 1.0
    saturation: float = 1.0
    sharpen: bool = False
    denoise: bool = False
    adaptive_contrast: bool = False
    max_dimension: Optional[int] = ENHANCE_MAX_DIMENSION


@dataclass(frozen=True)
class ColorCount:
    color: str
    rgb: tuple[int, int, int]
    count: int


def load_image(payload: ImageInput) -> Image.Image:
    """Decode a payload into a fully loaded PIL image (EXIF orientation applied)."""
    content, _ = decode_image_input(payload)
    try:
        image = Image.open(BytesIO(content))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageLoadError("Failed to load image: unsupported or corrupted data") from exc
    return ImageOps.exif_transpose(image) or image


def calculate_dimensions(
    original_width: int, original_height: int, max_width: int, max_height: int
) -> tuple[int, int]:
    """Fit (width, height) inside the bounds, keeping aspect ratio. Never upscales."""
    width = float(original_width)
    height = float(original_height)

    if width > max_width:
        height = height * max_width / width
        width = float(max_width)
    if height > max_height:
        width = width * max_height / height
        height = float(max_height)

    return max(1, int(round(width))), max(1, int(round(height)))


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA") or (
        image.mode == "P" and "transparency" in image.info
    )


def _quality_to_pil(quality: float) -> int:
    if not 0 < quality <= 1:
        raise ValidationError(f"Quality must be in (0, 1], got {quality}")
    return max(1, min(95, int(round(quality * 95))))


def _encode(image: Image.Image, mime_type: str, quality: float = DEFAULT_QUALITY) -> bytes:
    fmt = _FORMAT_BY_MIME.get(mime_type, "PNG")
    buffer = BytesIO()
    if fmt == "JPEG":
        if image.mode != "RGB":
            image = image.convert("RGB")
        image.save(buffer, format=fmt, quality=_quality_to_pil(quality))
    elif fmt == "WEBP":
        image.save(buffer, format=fmt, quality=_quality_to_pil(quality))
    else:
        image.save(buffer, format=fmt)
    return buffer.getvalue()


def _processed(
    image: Image.Image,
    mime_type: str,
    quality: float = DEFAULT_QUALITY,
    *,
    original_size: Optional[tuple[int, int]] = None,
) -> ProcessedImage:
    original_width, original_height = original_size or (None, None)
    return ProcessedImage(
        data=_encode(image, mime_type, quality),
        mime_type=mime_type,
        width=image.width,
        height=image.height,
        original_width=original_width,
        original_height=original_height,
    )


def resize(
    payload: ImageInput,
    max_width: int = DEFAULT_MAX_WIDTH,
    max_height: int = DEFAULT_MAX_HEIGHT,
    quality: float = DEFAULT_QUALITY,
) -> ProcessedImage:
    """Downscale to fit ``max_width`` x ``max_height`` and encode as JPEG."""
    _quality_to_pil(quality)
    if max_width < 1 or max_height < 1:
        raise ValidationError("Resize bounds must be positive")

    image = load_image(payload)
    width, height = calculate_dimensions(image.width, image.height, max_width, max_height)
    resized = image if (width, height) == image.size else image.resize(
        (width, height), Image.Resampling.LANCZOS
    )
    return _processed(
        resized, "image/jpeg", quality, original_size=(image.width, image.height)
    )


def crop(payload: ImageInput, region: CropRegion) -> ProcessedImage:
    image = load_image(payload)
    if region.width <= 0 or region.height <= 0:
        raise InvalidRegionError("Invalid crop area: width and height must be positive")
    if (
        region.x < 0
        or region.y < 0
        or region.x + region.width > image.width
        or region.y + region.height > image.height
    ):
        raise InvalidRegionError(
            f"Invalid crop area {region} for {image.width}x{image.height} image"
        )

    cropped = image.crop(
        (region.x, region.y, region.x + region.width, region.y + region.height)
    )
    return _processed(
        cropped, "image/jpeg", DEFAULT_QUALITY, original_size=(image.width, image.height)
    )


def apply_convolution(pixels: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    """
    Apply a 3x3 kernel to the colour channels of an (H, W, C) array.

    Only interior pixels are recomputed; the 1-pixel border and any alpha
    channel are copied unchanged. Output is clamped to [0, 255].
    """
    source = pixels.astype(np.float64)
    output = source.copy()
    height, width = source.shape[:2]
    if height < 3 or width < 3:
        return output

    acc = np.zeros((height - 2, width - 2, 3), dtype=np.float64)
    for ky in range(3):
        for kx in range(3):
            weight = kernel[ky, kx]
            if weight == 0:
                continue
            acc += weight * source[ky : ky + height - 2, kx : kx + width - 2, :3]

    output[1:-1, 1:-1, :3] = np.clip(acc, 0, 255)
    return output


def adaptive_contrast(pixels: np.ndarray) -> np.ndarray:
    """S-curve on luminance; every colour channel is scaled by the same factor."""
    source = pixels.astype(np.float64)
    output = source.copy()
    rgb = source[..., :3]
    luminance = 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]
    x = luminance / 255.0
    curved = np.where(x < 0.5, 2 * x * x, 1 - 2 * (1 - x) ** 2)
    factor = curved * 255.0 / np.maximum(luminance, 1.0)
    output[..., :3] = np.clip(rgb * factor[..., None], 0, 255)
    return output


def _apply_linear_adjustments(
    pixels: np.ndarray, brightness: float, contrast: float, saturation: float
) -> np.ndarray:
    output = pixels.astype(np.float64)
    rgb = output[..., :3]
    if brightness != 1.0:
        rgb = rgb * brightness
    if contrast != 1.0:
        rgb = (rgb - 127.5) * contrast + 127.5
    if saturation != 1.0:
        gray = (0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2])[..., None]
        rgb = gray + (rgb - gray) * saturation
    output[..., :3] = np.clip(rgb, 0, 255)
    return output


def enhance(payload: ImageInput, options: Optional[EnhanceOptions] = None) -> ProcessedImage:
    """
    Enhance an image.

    Steps run in a fixed order: re-bound to ``max_dimension``, linear
    brightness/contrast/saturation, sharpen, denoise, adaptive contrast.
    Alpha is preserved (the result is PNG when the source has alpha).
    """
    options = options or EnhanceOptions()
    for name in ("brightness", "contrast", "saturation"):
        if getattr(options, name) < 0:
            raise ValidationError(f"{name} must be non-negative")

    image = load_image(payload)
    original_size = image.size
    if options.max_dimension and max(image.size) > options.max_dimension:
        width, height = calculate_dimensions(
            image.width, image.height, options.max_dimension, options.max_dimension
        )
        image = image.resize((width, height), Image.Resampling.LANCZOS)

    keep_alpha = _has_alpha(image)
    mode = "RGBA" if keep_alpha else "RGB"
    pixels = np.asarray(image.convert(mode), dtype=np.float64)

    pixels = _apply_linear_adjustments(
        pixels, options.brightness, options.contrast, options.saturation
    )
    if options.sharpen:
        pixels = apply_convolution(pixels, SHARPEN_KERNEL)
    if options.denoise:
        pixels = apply_convolution(pixels, SMOOTH_KERNEL)
    if options.adaptive_contrast:
        pixels = adaptive_contrast(pixels)

    result = Image.fromarray(np.clip(np.rint(pixels), 0, 255).astype(np.uint8))
    mime_type = "image/png" if keep_alpha else "image/jpeg"
    return _processed(result, mime_type, 0.95, original_size=original_size)


def convert_format(
    payload: ImageInput, fmt: str = "jpeg", quality: float = DEFAULT_QUALITY
) -> ProcessedImage:
    mime_type = _MIME_BY_FORMAT.get(fmt.lower())
    if mime_type is None:
        raise ValidationError(f"Unsupported output format: {fmt}")
    image = load_image(payload)
    return _processed(image, mime_type, quality)


def create_thumbnail(payload: ImageInput, size: int = THUMBNAIL_SIZE) -> ProcessedImage:
    return resize(payload, size, size, THUMBNAIL_QUALITY)


def extract_colors(payload: ImageInput, k: int = 5) -> list[ColorCount]:
    """Top-``k`` exact RGB colours of the opaque pixels, most frequent first."""
    if k <= 0:
        return []
    image = load_image(payload).convert("RGBA").resize(
        (COLOR_SAMPLE_SIZE, COLOR_SAMPLE_SIZE), Image.Resampling.BILINEAR
    )
    pixels = np.asarray(image, dtype=np.uint8).reshape(-1, 4)
    opaque = pixels[pixels[:, 3] > OPAQUE_ALPHA_THRESHOLD][:, :3]
    if opaque.size == 0:
        return []

    colors, counts = np.unique(opaque, axis=0, return_counts=True)
    order = np.argsort(-counts, kind="stable")[:k]
    result = []
    for idx in order:
        r, g, b = (int(v) for v in colors[idx])
        result.append(
            ColorCount(color=f"rgb({r},{g},{b})", rgb=(r, g, b), count=int(counts[idx]))
        )
    return result


def validate(payload: ImageInput) -> dict:
    """Never raises. Returns ``valid`` plus dimensions or an ``error``."""
    try:
        image = load_image(payload)
    except ValidationError as exc:
        return {"valid": False, "error": exc.message}
    width, height = image.size
    if width <= 0 or height <= 0:
        return {"valid": False, "error": "Invalid image dimensions"}
    return {
        "valid": True,
        "width": width,
        "height": height,
        "aspect_ratio": width / height,
    }


def estimate_size(payload: ImageInput) -> int:
    """Approximate decoded byte size (base64 length * 3/4 for string payloads)."""
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    encoded = payload.split(",", 1)[1] if "," in payload else payload
    return int(round(len(encoded.strip()) * 3 / 4))


def get_image_format(payload: ImageInput) -> str:
    if isinstance(payload, str):
        match = _DATA_URL_FORMAT_RE.search(payload)
        if match:
            return match.group(1)
    try:
        content, _ = decode_image_input(payload)
    except ValidationError:
        return "unknown"
    sniffed = sniff_image_mime_type(content)
    return sniffed.split("/", 1)[1] if sniffed else "unknown"


def get_metadata(payload: ImageInput) -> dict:
    validation = validate(payload)
    if not validation["valid"]:
        return validation
    return {
        **validation,
        "size": estimate_size(payload),
        "dominant_colors": [
            {"color": c.color, "count": c.count} for c in extract_colors(payload, 3)
        ],
        "format": get_image_format(payload),
    }
