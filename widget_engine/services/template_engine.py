"""Placeholder substitution for widget query templates.

Templates carry ``${name}`` placeholders. Substitution is a single left-to-right
scan; values are never re-scanned, and every placeholder must have a value or
the whole render fails. Each dialect decides how a value is embedded:

* ``raw``  - verbatim, for protocols without binding or quoting rules
* ``jql``  - JQL string literal
* ``json`` - JSON string (REST templates are JSON documents)
* ``sql``  - ``%s`` bind marker, the value goes to the driver as a parameter

A jql or json placeholder that already sits inside a quoted string is escaped
for the quote that is open (``'`` or ``"`` in JQL) and not wrapped again. A sql
placeholder inside a ``'...'`` literal turns the literal into a bound
expression: ``'%${x}%'`` becomes ``('%%' || %s || '%%')``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from widget_engine.errors import MissingParameterError, TemplateSyntaxError

Dialect = Literal["raw", "jql", "json", "sql"]

_PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_.\-]*)\}")
_DIALECTS: frozenset[str] = frozenset({"raw", "jql", "json", "sql"})
_QUOTE_CHARS: dict[str, str] = {"jql": "'\"", "json": '"', "raw": ""}


@dataclass(slots=True, frozen=True)
class RenderedQuery:
    text: str
    params: tuple[Any, ...] = ()


@dataclass(slots=True, frozen=True)
class _Placeholder:
    name: str
    start: int
    end: int
    open_quote: str | None


def find_placeholders(template: str) -> list[str]:
    names: list[str] = []
    for match in _PLACEHOLDER_PATTERN.finditer(template):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


def _scan_quotes(text: str, quote_chars: str) -> tuple[list[_Placeholder], str | None]:
    """Walk ``text`` once, tracking which quote is open at each placeholder.

    A backslash escapes the next character, except when that character starts a
    placeholder. Returns the placeholders and the quote still open at the end.
    """
    found: list[_Placeholder] = []
    open_quote: str | None = None
    position = 0
    while position < len(text):
        match = _PLACEHOLDER_PATTERN.match(text, position)
        if match:
            found.append(_Placeholder(match.group(1), match.start(), match.end(), open_quote))
            position = match.end()
            continue
        char = text[position]
        if char == "\\" and not _PLACEHOLDER_PATTERN.match(text, position + 1):
            position += 2
            continue
        if open_quote is None and char in quote_chars:
            open_quote = char
        elif char == open_quote:
            open_quote = None
        position += 1
    return found, open_quote


def unclosed_quote(text: str, quote_chars: str = "'\"") -> str | None:
    return _scan_quotes(text, quote_chars)[1]


def _as_text(name: str, value: Any) -> str:
    text = value if isinstance(value, str) else str(value)
    if _PLACEHOLDER_PATTERN.search(text):
        raise TemplateSyntaxError(message=f"Value for '{name}' must not contain placeholder syntax")
    return text


def _jql_literal(text: str, open_quote: str | None) -> str:
    quote = open_quote or '"'
    escaped = text.replace("\\", "\\\\").replace(quote, "\\" + quote)
    return escaped if open_quote else f"{quote}{escaped}{quote}"


def _json_literal(text: str, open_quote: str | None) -> str:
    encoded = json.dumps(text, ensure_ascii=False)
    return encoded[1:-1] if open_quote else encoded


def _value(values: Mapping[str, Any], name: str) -> Any:
    if name not in values:
        raise MissingParameterError(name)
    return values[name]


def _closing_quote(template: str, start: int, quote: str) -> int:
    # A doubled quote is an escaped quote in both SQL literals and identifiers.
    position = start + 1
    while position < len(template):
        if template[position] == quote:
            if template.startswith(quote * 2, position):
                position += 2
                continue
            return position + 1
        position += 1
    kind = "string literal" if quote == "'" else "quoted identifier"
    raise TemplateSyntaxError(message=f"Unterminated SQL {kind} starting at offset {start}")


def _sql_passthrough(segment: str, where: str) -> str:
    match = _PLACEHOLDER_PATTERN.search(segment)
    if match:
        raise TemplateSyntaxError(message=f"Placeholder '${{{match.group(1)}}}' cannot be bound inside a SQL {where}")
    return segment.replace("%", "%%")


def _sql_literal_value(value: Any) -> Any:
    # Inside a quoted literal the value is text, as string interpolation would have made it.
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _sql_string_literal(body: str, values: Mapping[str, Any], params: list[Any]) -> str:
    pieces: list[str] = []
    cursor = 0
    for match in _PLACEHOLDER_PATTERN.finditer(body):
        if match.start() > cursor:
            pieces.append("'" + body[cursor : match.start()].replace("%", "%%") + "'")
        pieces.append("%s")
        params.append(_sql_literal_value(_value(values, match.group(1))))
        cursor = match.end()
    if cursor == 0:
        return "'" + body.replace("%", "%%") + "'"
    if cursor < len(body):
        pieces.append("'" + body[cursor:].replace("%", "%%") + "'")
    if len(pieces) == 1:
        return pieces[0]
    return "(" + " || ".join(pieces) + ")"


def _render_sql(template: str, values: Mapping[str, Any]) -> RenderedQuery:
    parts: list[str] = []
    params: list[Any] = []
    position = 0
    while position < len(template):
        match = _PLACEHOLDER_PATTERN.match(template, position)
        if match:
            parts.append("%s")
            params.append(_value(values, match.group(1)))
            position = match.end()
            continue
        if template.startswith("--", position):
            end = template.find("\n", position)
            end = len(template) if end == -1 else end + 1
            parts.append(_sql_passthrough(template[position:end], "comment"))
            position = end
            continue
        if template.startswith("/*", position):
            end = template.find("*/", position + 2)
            if end == -1:
                raise TemplateSyntaxError(message=f"Unterminated SQL comment starting at offset {position}")
            parts.append(_sql_passthrough(template[position : end + 2], "comment"))
            position = end + 2
            continue
        char = template[position]
        if char == '"':
            end = _closing_quote(template, position, '"')
            parts.append(_sql_passthrough(template[position:end], "quoted identifier"))
            position = end
        elif char == "'":
            end = _closing_quote(template, position, "'")
            parts.append(_sql_string_literal(template[position + 1 : end - 1], values, params))
            position = end
        else:
            parts.append("%%" if char == "%" else char)
            position += 1
    return RenderedQuery(text="".join(parts), params=tuple(params))


def render(template: str, values: Mapping[str, Any], *, dialect: Dialect = "raw") -> RenderedQuery:
    if dialect not in _DIALECTS:
        raise TemplateSyntaxError(message=f"Unsupported template dialect '{dialect}'")
    if dialect == "sql":
        return _render_sql(template, values)

    placeholders, _open_quote = _scan_quotes(template, _QUOTE_CHARS[dialect])
    parts: list[str] = []
    cursor = 0
    for placeholder in placeholders:
        text = _as_text(placeholder.name, _value(values, placeholder.name))
        parts.append(template[cursor : placeholder.start])
        if dialect == "jql":
            parts.append(_jql_literal(text, placeholder.open_quote))
        elif dialect == "json":
            parts.append(_json_literal(text, placeholder.open_quote))
        else:
            parts.append(text)
        cursor = placeholder.end
    parts.append(template[cursor:])
    return RenderedQuery(text="".join(parts))


def substitute(template: str, values: Mapping[str, Any], *, dialect: Dialect = "raw") -> str:
    if dialect == "sql":
        raise TemplateSyntaxError(message="SQL templates bind their values; use render() to obtain the parameters")
    return render(template, values, dialect=dialect).text
