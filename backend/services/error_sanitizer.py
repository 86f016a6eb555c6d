import re
from typing import Optional


_SUSPICIOUS_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"traceback", re.IGNORECASE),
    re.compile(r"\bfile\s+\".*?\.py\"", re.IGNORECASE),
    re.compile(r"AIza[0-9A-Za-z_\-]{10,}"),
    re.compile(r"[?&]key=", re.IGNORECASE),
    re.compile(r"x-goog-api-key", re.IGNORECASE),
    re.compile(r"\bbearer\s+[A-Za-z0-9._\-]+", re.IGNORECASE),
    re.compile(r"/home/|/users/|/root/|[a-z]:\\", re.IGNORECASE),
)

_DATA_URL_RE = re.compile(r"data:[\w/+.\-]+;base64,[A-Za-z0-9+/=]{16,}")


def sanitize_public_error_message(
    message: Optional[str],
    *,
    fallback: str = "Internal error",
    max_chars: int = 240,
) -> Optional[str]:
    """
    Sanitize an error message before returning it to clients.

    Treat `message` as untrusted: it may contain stack traces, credentials,
    file paths or echoed image payloads (especially if derived from
    `str(exception)` of a service client error).
    """
    if not message:
        return None

    safe = message.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
    safe = _DATA_URL_RE.sub("<image data>", safe)
    safe = re.sub(r"\s+", " ", safe).strip()
    if not safe:
        return None

    if any(p.search(safe) for p in _SUSPICIOUS_ERROR_PATTERNS):
        return fallback

    if len(safe) > max_chars:
        return f"{safe[:max_chars]}…"
    return safe
