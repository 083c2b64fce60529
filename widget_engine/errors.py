from __future__ import annotations

import uuid


class EngineError(Exception):
    code = "engine_error"
    default_status_code = 500
    retryable = False
    upstream_status_code: int | None = None

    def __init__(
        self,
        *,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        error_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code if status_code is not None else self.default_status_code
        self.code = code or self.code
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())


class MissingParameterError(EngineError):
    code = "missing_parameter"
    default_status_code = 400

    def __init__(self, parameter: str, *, message: str | None = None) -> None:
        super().__init__(message=message or f"Placeholder '${{{parameter}}}' has no resolved value")
        self.parameter = parameter


class TemplateSyntaxError(EngineError):
    code = "template_syntax"
    default_status_code = 400


class MissingContextValueError(EngineError):
    code = "missing_context_value"
    default_status_code = 400

    def __init__(self, parameter: str, context_key: str) -> None:
        super().__init__(message=f"Parameter '{parameter}' requires context value '{context_key}'")
        self.parameter = parameter
        self.context_key = context_key


class LookupNotFoundError(EngineError):
    code = "lookup_not_found"
    default_status_code = 404

    def __init__(self, parameter: str, *, table: str, column: str, entity_id: object) -> None:
        super().__init__(message=f"Parameter '{parameter}': no value in {table}.{column} for entity {entity_id}")
        self.parameter = parameter


class AmbiguousLookupError(EngineError):
    code = "ambiguous_lookup"
    default_status_code = 409

    def __init__(self, parameter: str, *, table: str, column: str, entity_id: object) -> None:
        super().__init__(
            message=f"Parameter '{parameter}': multiple rows in {table}.{column} match entity {entity_id}"
        )
        self.parameter = parameter


class UnknownPluginError(EngineError):
    code = "unknown_plugin"
    default_status_code = 404


class InvalidQueryError(EngineError):
    code = "invalid_query"
    default_status_code = 400


class RateLimited(EngineError):
    code = "rate_limited"
    default_status_code = 429
    retryable = True

    def __init__(self, *, key: str, retry_after_seconds: float) -> None:
        self.retry_after_ms = max(1, int(retry_after_seconds * 1000))
        super().__init__(message=f"Rate limit active for '{key}', retry in {self.retry_after_ms / 1000:.1f}s")
        self.key = key


class TransportError(EngineError):
    code = "transport_error"
    default_status_code = 502
    retryable = True

    def __init__(self, *, message: str, status_code: int | None = None, sent: bool = True) -> None:
        super().__init__(message=message, status_code=status_code)
        self.upstream_status_code = status_code
        # False when the request never left this process; the rate gate is released.
        self.sent = sent


class QueryTimeout(EngineError):
    code = "timeout"
    default_status_code = 504
    retryable = True


class QueryCancelled(EngineError):
    code = "cancelled"
    default_status_code = 499
    retryable = True


class MalformedResponseError(EngineError):
    code = "malformed_response"
    default_status_code = 502

    def __init__(self, *, message: str, upstream_status_code: int | None = None) -> None:
        super().__init__(message=message)
        self.upstream_status_code = upstream_status_code


class WidgetNotFoundError(EngineError):
    code = "widget_not_found"
    default_status_code = 404

    def __init__(self, widget_id: str) -> None:
        super().__init__(message=f"Widget '{widget_id}' not found")
        self.widget_id = widget_id
