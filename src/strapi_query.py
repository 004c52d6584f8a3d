"""Bracket-notation query string encoding for the Strapi REST API.

Strapi expects nested filter/sort/populate/pagination parameters flattened as
`filters[title][$eq]=x` or `populate[0]=a&populate[1]=b`.
"""

from collections.abc import Mapping
from typing import Union
from urllib.parse import quote

Scalar = Union[str, int, float, bool, None]
QueryValue = Union[Scalar, list["QueryValue"], tuple["QueryValue", ...], Mapping[str, "QueryValue"]]

# Same unreserved set as JavaScript's encodeURIComponent.
_VALUE_SAFE = "!~*'()"
# Operators such as $eq / $containsi stay readable inside key segments.
_KEY_SAFE = _VALUE_SAFE + "$"


def _render_scalar(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_sequence(value: object) -> bool:
    return isinstance(value, (list, tuple))


def _pair(key: str, value: Scalar) -> str:
    return f"{key}={quote(_render_scalar(value), safe=_VALUE_SAFE)}"


def _join_key(prefix: str, key: object) -> str:
    segment = quote(str(key), safe=_KEY_SAFE)
    return f"{prefix}[{segment}]" if prefix else segment


def _encode_sequence(items: Union[list, tuple], prefix: str) -> list[str]:
    parts = []
    for index, item in enumerate(items):
        item_key = f"{prefix}[{index}]"
        if isinstance(item, Mapping):
            parts.append(build_query_string(item, item_key))
        elif _is_sequence(item):
            parts.append("&".join(p for p in _encode_sequence(item, item_key) if p))
        elif item is not None:
            parts.append(_pair(item_key, item))
    return parts


def build_query_string(params: Mapping[str, QueryValue], prefix: str = "") -> str:
    """Flatten a nested query mapping into Strapi's bracket notation.

    Keys are emitted in the mapping's own iteration order. `None` values are
    skipped. An empty mapping yields an empty string.
    """
    parts: list[str] = []
    for key, value in params.items():
        new_prefix = _join_key(prefix, key)
        if isinstance(value, Mapping):
            parts.append(build_query_string(value, new_prefix))
        elif _is_sequence(value):
            parts.extend(_encode_sequence(value, new_prefix))
        elif value is not None:
            parts.append(_pair(new_prefix, value))
    return "&".join(p for p in parts if p)


def with_query(path: str, params: Mapping[str, QueryValue] | None) -> str:
    """Append `?<query>` to path, or return path unchanged when there is nothing to add."""
    qs = build_query_string(params or {})
    return f"{path}?{qs}" if qs else path
