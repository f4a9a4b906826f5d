from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlparse

FAVICON_URL = "https://www.google.com/s2/favicons?domain={domain}&sz=64"


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def clean_content(text: str, max_length: int = 8000) -> str:
    """Collapse whitespace and trim to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def normalize_url(url: str) -> str:
    """Comparison key for a URL: lower-cased host without ``www.``, no fragment, no trailing slash.

    Path case and query string are preserved since they may address different content.
    """
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return url.lower().strip().rstrip("/")
    if not parsed.scheme or not parsed.netloc:
        return url.lower().strip().rstrip("/")
    host = parsed.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    path = parsed.path.rstrip("/")
    normalized = f"{parsed.scheme.lower()}://{host}{path}"
    if parsed.query:
        normalized += f"?{parsed.query}"
    return normalized


def favicon_url(url: str) -> str:
    return FAVICON_URL.format(domain=extract_domain(url) or "example.com")


def estimate_read_time(content: str) -> str:
    words = len((content or "").split())
    return f"{max(1, round(words / 200))} min"


def _parse_date(value: str) -> datetime:
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = parsedate_to_datetime(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''} ago"


def time_ago(published: str | None, now: datetime | None = None) -> str:
    """Human relative age of a publication date, "Recent" when it cannot be parsed."""
    if not published:
        return "Recent"
    try:
        published_at = _parse_date(published)
    except (TypeError, ValueError, IndexError):
        return "Recent"

    now = now or datetime.now(timezone.utc)
    seconds = (now - published_at).total_seconds()
    if seconds < 0:
        return "Recent"

    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24
    weeks = days // 7
    months = days // 30
    if months > 0:
        return _plural(months, "month")
    if weeks > 0:
        return _plural(weeks, "week")
    if days > 0:
        return _plural(days, "day")
    if hours > 0:
        return _plural(hours, "hour")
    if minutes > 0:
        return _plural(minutes, "minute")
    return "Just now"
