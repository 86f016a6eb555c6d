"""
Decoding helpers for Gemini responses.

Two layers: strict extraction (``extract_json_object``, ``extract_image_part``)
that either succeeds or raises, and heuristic extraction
(``extract_recommendations``, ``extract_confidence``) used only as an
explicit fallback when the strict path fails.
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from services.errors import NoImageDataError, ParseError

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_DATA_URI_RE = re.compile(
    r"data:(image/[a-zA-Z0-9.+-]+);base64,([A-Za-z0-9+/=\s]+)"
)
_CONFIDENCE_RE = re.compile(r"confidence[:\s]+(\d+(?:\.\d+)?)", re.IGNORECASE)
_RECOMMENDATION_KEYWORDS = ("recommend", "suggest", "advice")


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    mime_type: str


def iter_response_parts(response: object) -> Iterable[object]:
    """Yield candidate parts across SDK response layouts."""
    direct_parts = getattr(response, "parts", None)
    if direct_parts:
        yield from direct_parts
        return

    candidates = getattr(response, "candidates", None)
    if not candidates:
        return
    for candidate in candidates:
        content = getattr(candidate, "content", None)
        if content is None:
            continue
        parts = getattr(content, "parts", None)
        if not parts:
            continue
        yield from parts


def response_text(response: object) -> str:
    """Concatenate every text part of a response."""
    chunks = []
    for part in iter_response_parts(response):
        text = getattr(part, "text", None)
        if isinstance(text, str) and text:
            chunks.append(text)
    if chunks:
        return "\n".join(chunks)

    # Some SDK builds only expose the aggregated .text accessor.
    try:
        text = getattr(response, "text", None)
    except (ValueError, AttributeError):
        text = None
    return text if isinstance(text, str) else ""


def _decode_inline_data(data: Any) -> Optional[bytes]:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data) or None
    if isinstance(data, str) and data:
        try:
            return base64.b64decode(data, validate=False) or None
        except (binascii.Error, ValueError):
            return None
    return None


def extract_image_part(response: object) -> ImagePart:
    """
    Return the first image carried by a response.

    Binary parts with an ``image/*`` mime type win; otherwise text parts are
    scanned for an embedded ``data:image/...;base64,`` URI. Raises
    ``NoImageDataError`` when neither is found.
    """
    for part in iter_response_parts(response):
        inline_data = getattr(part, "inline_data", None)
        if inline_data is None:
            continue
        mime_type = (getattr(inline_data, "mime_type", None) or "").lower()
        if not mime_type.startswith("image/"):
            continue
        data = _decode_inline_data(getattr(inline_data, "data", None))
        if data:
            return ImagePart(data=data, mime_type=mime_type)

    embedded = extract_data_uri_image(response_text(response))
    if embedded is not None:
        return embedded

    raise NoImageDataError("Response contained no image part")


def extract_data_uri_image(text: str) -> Optional[ImagePart]:
    if not text:
        return None
    match = _DATA_URI_RE.search(text)
    if not match:
        return None
    payload = re.sub(r"\s+", "", match.group(2))
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        logger.debug("Embedded data URI was not valid base64")
        return None
    if not data:
        return None
    return ImagePart(data=data, mime_type=match.group(1).lower())


def _first_balanced_object(text: str) -> Optional[str]:
    """Return the first brace-balanced ``{...}`` substring, string-literal aware."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        # Unbalanced from this opening brace; try the next one.
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> dict:
    """
    Strictly decode the first JSON object embedded in model output.

    Markdown code fences are unwrapped first. Raises ``ParseError`` if no
    balanced object exists or it is not valid JSON.
    """
    if not text or not text.strip():
        raise ParseError("Empty response text", raw_text=text or "")

    fenced = _FENCED_BLOCK_RE.search(text)
    candidate_sources = [fenced.group(1), text] if fenced else [text]

    last_error: Optional[Exception] = None
    for source in candidate_sources:
        candidate = _first_balanced_object(source)
        if candidate is None:
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
            continue
        if isinstance(value, dict):
            return value

    message = "No JSON object found in response"
    if last_error is not None:
        message = f"Malformed JSON in response: {last_error}"
    raise ParseError(message, raw_text=text)


def extract_recommendations(text: str) -> list[str]:
    recommendations = []
    for line in (text or "").splitlines():
        lowered = line.lower()
        if any(keyword in lowered for keyword in _RECOMMENDATION_KEYWORDS):
            stripped = line.strip()
            if stripped:
                recommendations.append(stripped)
    return recommendations


def normalize_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    """Coerce a model-reported confidence into [0, 1] (1 < v <= 100 read as a percentage)."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    if 1.0 < number <= 100.0:
        number = number / 100.0
    return min(1.0, max(0.0, number))


def extract_confidence(text: str, default: float = DEFAULT_CONFIDENCE) -> float:
    match = _CONFIDENCE_RE.search(text or "")
    if not match:
        return default
    return normalize_confidence(match.group(1), default)
