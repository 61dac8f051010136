"""
General helper utilities
"""
import uuid
from datetime import datetime, timezone
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl


def generate_id(prefix: str = "id") -> str:
    """Opaque prefixed identifier, e.g. mtg_1b4e..."""
    return f"{prefix}_{uuid.uuid4().hex}"


def generate_token() -> str:
    """Single-use participant access token"""
    return f"tok_{uuid.uuid4().hex}{uuid.uuid4().hex[:8]}"


def utcnow() -> datetime:
    """Naive UTC timestamp (stored as-is in DateTime columns)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_participant_url(base_url: str, token: str) -> str:
    """Append the participant token to the base link as ?token=..."""
    parts = urlparse(base_url)
    query = dict(parse_qsl(parts.query))
    query["token"] = token
    return urlunparse(parts._replace(query=urlencode(query)))


def truncate(text: str, limit: int) -> str:
    """Cut text to at most `limit` characters"""
    if text is None:
        return ""
    return text if len(text) <= limit else text[:limit]
