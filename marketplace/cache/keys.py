"""
Cache Key Construction

A cache key is an operation tag plus an optional scope (e.g. the owning
user) plus a canonical rendering of the query parameters:

    listing_category_5_page_1
    collections_user_9_limit_20_page_2
    global_stats

Two logically identical queries always render the same key: parameter
names are normalized and sorted, empty values are dropped, and values are
URL-quoted so glob metacharacters never end up inside a key. Names and
values never contain a bare separator, so distinct queries never share a
key.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import quote


SEPARATOR = "_"

# Request parameter aliases -> canonical key names
PARAM_ALIASES: Dict[str, str] = {
    "categoryId": "category",
    "category_id": "category",
    "searchQuery": "search",
    "search_query": "search",
    "q": "search",
    "query": "search",
    "sortBy": "sort",
    "sort_by": "sort",
    "sortOrder": "order",
    "sort_order": "order",
    "userId": "user",
    "user_id": "user",
    "excludeId": "exclude",
    "exclude_id": "exclude",
    "assetId": "asset",
    "asset_id": "asset",
}

# Free text is case-insensitive for caching purposes
CASE_INSENSITIVE_PARAMS = {"search"}


def canonical_name(name: str) -> str:
    """Map a request parameter name to its canonical key name."""
    return PARAM_ALIASES.get(name, name)


def _render_value(name: str, value: Any) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (list, tuple, set, frozenset)):
        text = ",".join(sorted(str(v) for v in value))
    else:
        text = str(value).strip()

    if name in CASE_INSENSITIVE_PARAMS:
        text = " ".join(text.lower().split())

    return _escape(text)


def _escape(text: str) -> str:
    # quote() leaves "_" alone, but it is the separator
    return quote(text, safe="-.,").replace(SEPARATOR, "%5F")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple, set, frozenset)) and not value:
        return True
    return False


def canonicalize(params: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    """
    Normalize a parameter mapping into sorted (name, value) pairs.

    Raises ValueError if two aliases of the same parameter disagree.
    """
    if not params:
        return ()

    canonical: Dict[str, str] = {}
    for raw_name, raw_value in params.items():
        if _is_empty(raw_value):
            continue
        name = _escape(canonical_name(raw_name))
        value = _render_value(name, raw_value)
        if name in canonical and canonical[name] != value:
            raise ValueError(
                f"Conflicting values for cache parameter '{name}': "
                f"{canonical[name]!r} vs {value!r}"
            )
        canonical[name] = value

    return tuple(sorted(canonical.items()))


@dataclass(frozen=True)
class CacheKey:
    """Structured cache key: operation tag + scope + canonical parameters."""
    operation: str
    params: Tuple[Tuple[str, str], ...] = ()
    scope: Tuple[Tuple[str, str], ...] = field(default=())

    @classmethod
    def build(
        cls,
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
        **scope: Any,
    ) -> "CacheKey":
        return cls(
            operation=operation,
            params=canonicalize(params),
            scope=tuple((_escape(name), _render_value(name, value)) for name, value in scope.items()),
        )

    @property
    def base(self) -> str:
        """Operation plus scope, without the query parameters."""
        return _join(self.operation, self.scope)

    def render(self) -> str:
        return _join(self.base, self.params)

    def pattern(self) -> str:
        """Glob matching every key that shares this key's operation and scope."""
        return f"{self.base}{SEPARATOR}*"

    def __str__(self) -> str:
        return self.render()


def _join(prefix: str, pairs: Iterable[Tuple[str, str]]) -> str:
    parts = [prefix]
    for name, value in pairs:
        parts.append(name)
        parts.append(value)
    return SEPARATOR.join(parts)


def build_key(operation: str, params: Optional[Mapping[str, Any]] = None, **scope: Any) -> str:
    """Render a cache key string in one call."""
    return CacheKey.build(operation, params, **scope).render()


def key_pattern(operation: str, **scope: Any) -> str:
    """Glob for all keys of an operation (optionally within a scope)."""
    return CacheKey.build(operation, **scope).pattern()
