from __future__ import annotations

import base64

from widget_engine.observability import redact_headers, redact_url
from widget_engine.schemas import AuthConfig


def build_auth_headers(auth: AuthConfig) -> dict[str, str]:
    headers: dict[str, str] = dict(auth.extra_headers)
    if auth.type == "basic" and auth.username is not None and auth.password is not None:
        raw = f"{auth.username}:{auth.password}".encode("utf-8")
        headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
    elif auth.type == "bearer" and auth.token:
        headers["Authorization"] = f"Bearer {auth.token}"
    elif auth.type == "api_key" and auth.key:
        headers[auth.header or "Authorization"] = auth.key
    return headers


def secret_header_names(auth: AuthConfig) -> tuple[str, ...]:
    names = ["Authorization"]
    if auth.header:
        names.append(auth.header)
    names.extend(auth.extra_headers.keys())
    return tuple(names)


def merge_request_headers(base: dict[str, str], auth: AuthConfig) -> dict[str, str]:
    merged = {"Accept": "application/json", **base}
    # Instance credentials override anything a template supplies.
    merged.update(build_auth_headers(auth))
    return merged


def describe_request(method: str, url: str, headers: dict[str, str], auth: AuthConfig) -> dict[str, object]:
    return {
        "method": method,
        "url": redact_url(url),
        "headers": redact_headers(headers, secret_header_names(auth)),
    }
