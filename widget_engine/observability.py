import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from widget_engine.settings import get_settings

logger = logging.getLogger("uvicorn.error")

REDACTED = "***"
_SENSITIVE_HEADER_MARKERS = ("authorization", "token", "secret", "password", "api-key", "apikey", "api_key", "cookie")
_URL_CREDENTIALS_PATTERN = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.\-]*://)(?P<userinfo>[^/@\s]+)@")
_AUTH_VALUE_PATTERN = re.compile(r"\b(Basic|Bearer)\s+[A-Za-z0-9._~+/=\-]+", re.IGNORECASE)


def redact_url(url: str) -> str:
    def _mask(match: re.Match[str]) -> str:
        userinfo = match.group("userinfo")
        if ":" in userinfo:
            username, _password = userinfo.split(":", 1)
            return f"{match.group('scheme')}{username}:{REDACTED}@"
        return f"{match.group('scheme')}{REDACTED}@"

    return _URL_CREDENTIALS_PATTERN.sub(_mask, url)


def is_sensitive_header(name: str, extra_names: tuple[str, ...] = ()) -> bool:
    lowered = name.lower()
    if lowered in {item.lower() for item in extra_names}:
        return True
    return any(marker in lowered for marker in _SENSITIVE_HEADER_MARKERS)


def redact_headers(headers: Mapping[str, Any], extra_names: tuple[str, ...] = ()) -> dict[str, str]:
    return {
        name: (REDACTED if is_sensitive_header(name, extra_names) else str(value))
        for name, value in headers.items()
    }


def sanitize_error_message(message: str) -> str:
    cleaned = redact_url(message)
    cleaned = _AUTH_VALUE_PATTERN.sub(lambda match: f"{match.group(1)} {REDACTED}", cleaned)
    if "password=" in cleaned.lower():
        return "Internal processing error"
    return cleaned


def _describe_value(value: Any, limit: int = 120) -> str:
    if value is None:
        return "null"
    text = value if isinstance(value, str) else repr(value)
    return text if len(text) <= limit else f"{text[:limit]}...({len(text)} chars)"


def describe_query_params(params: Sequence[Any] | Mapping[str, Any]) -> list[str] | dict[str, str]:
    if isinstance(params, Mapping):
        return {
            str(name): (REDACTED if is_sensitive_header(str(name)) else _describe_value(value))
            for name, value in params.items()
        }
    return [_describe_value(value) for value in params]


def log_external_query(
    *,
    query: str,
    dialect: str,
    context: str,
    params: Sequence[Any] | Mapping[str, Any] | None = None,
    instance_id: str | None = None,
) -> None:
    """Log the text of a query leaving the engine (SQL, JQL or a REST request line).

    Off unless ``log_external_queries`` is set. Bound values are included only
    with ``log_external_query_params``, and keys that look like credentials are
    masked even then.
    """
    settings = get_settings()
    if not settings.log_external_queries:
        return

    entry: dict[str, Any] = {
        "dialect": dialect,
        "context": context,
        "instance_id": instance_id,
        "query": redact_url(query),
    }
    if params and settings.log_external_query_params:
        entry["params"] = describe_query_params(params)
    logger.info("external_query | %s", entry)
