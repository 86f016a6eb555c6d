"""
Local placeholder rendering.

Used when the generation service returns no usable image: the pipeline
still needs a displayable artifact, so one is drawn here with Pillow and no
network access.
"""

import logging
import textwrap
from io import BytesIO

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

PLACEHOLDER_SIZE = (512, 640)
PLACEHOLDER_MIME_TYPE = "image/png"
GRADIENT_TOP = (102, 126, 234)
GRADIENT_BOTTOM = (118, 75, 162)
BORDER_COLOR = (255, 255, 255)
BORDER_WIDTH = 8
TEXT_COLOR = (255, 255, 255)

DEFAULT_TITLE = "Virtual Try-On Preview"
DEFAULT_CAPTION = (
    "The AI service did not return an image for this request. "
    "This placeholder is not AI-generated content."
)


def _vertical_gradient(size: tuple[int, int]) -> Image.Image:
    width, height = size
    image = Image.new("RGB", size, GRADIENT_TOP)
    draw = ImageDraw.Draw(image)
    span = max(1, height - 1)
    for y in range(height):
        t = y / span
        color = tuple(
            int(round(top + (bottom - top) * t))
            for top, bottom in zip(GRADIENT_TOP, GRADIENT_BOTTOM)
        )
        draw.line([(0, y), (width, y)], fill=color)
    return image


def _draw_centered_lines(
    draw: ImageDraw.ImageDraw,
    lines: list[str],
    font: ImageFont.ImageFont,
    width: int,
    top: int,
    spacing: int = 6,
) -> int:
    y = top
    for line in lines:
        left, upper, right, lower = draw.textbbox((0, 0), line, font=font)
        line_width = right - left
        draw.text(((width - line_width) / 2, y), line, fill=TEXT_COLOR, font=font)
        y += (lower - upper) + spacing
    return y


def render_placeholder(
    caption: str = DEFAULT_CAPTION,
    *,
    title: str = DEFAULT_TITLE,
    size: tuple[int, int] = PLACEHOLDER_SIZE,
) -> bytes:
    """Render a gradient placeholder with a bordered frame and caption. Returns PNG bytes."""
    width, height = size
    image = _vertical_gradient(size)
    draw = ImageDraw.Draw(image)

    inset = BORDER_WIDTH * 2
    draw.rectangle(
        [inset, inset, width - inset - 1, height - inset - 1],
        outline=BORDER_COLOR,
        width=BORDER_WIDTH,
    )

    font = ImageFont.load_default()
    chars_per_line = max(16, (width - 6 * inset) // 7)
    title_bottom = _draw_centered_lines(draw, [title], font, width, top=height // 3)
    caption_lines = textwrap.wrap(caption or "", width=chars_per_line)
    _draw_centered_lines(draw, caption_lines, font, width, top=title_bottom + 24)

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    logger.debug("Rendered %dx%d fallback placeholder", width, height)
    return buffer.getvalue()
