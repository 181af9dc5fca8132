"""
HTTP Cache Headers

Manages Cache-Control, ETag and Last-Modified for API responses, so
browsers and CDNs in front of the service can reuse a response and
revalidate it with a conditional GET.

HTTP caching layers:
1. Browser/CDN: Cache-Control max-age per route (api_data presets)
2. Conditional requests: ETag (If-None-Match) and Last-Modified
   (If-Modified-Since) answered with 304 Not Modified
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Mapping, Optional

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)

HTTP_DATE_FORMAT = "%a, %d %b %Y %H:%M:%S GMT"

# Payload fields describing how a response was served, not what it contains
SERVING_FIELDS = ("cached", "source")

# Payload fields that hold the list of returned items
ITEM_FIELDS = ("data", "assets", "collections")


def generate_etag(*components: Any, weak: bool = False) -> str:
    """
    Generate ETag from components.

    Args:
        components: Values to hash for ETag
        weak: If True, generates a weak ETag (W/"...")

    Returns:
        ETag string with quotes
    """
    hash_input = ":".join(str(c) for c in components)
    hash_value = hashlib.md5(hash_input.encode()).hexdigest()[:16]

    if weak:
        return f'W/"{hash_value}"'
    return f'"{hash_value}"'


def parse_etag(etag: str) -> str:
    """Parse ETag value, removing quotes and weak prefix."""
    if not etag:
        return ""
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"')


def etags_match(request_etag: Optional[str], current_etag: str) -> bool:
    """
    Check an If-None-Match header against the current ETag.

    Weak comparison; handles comma-separated lists and the `*` wildcard.
    """
    if not request_etag:
        return False

    current = parse_etag(current_etag)
    for etag in request_etag.split(","):
        etag = etag.strip()
        if etag == "*" or parse_etag(etag) == current:
            return True
    return False


class CacheHeadersBuilder:
    """
    Fluent builder for HTTP cache headers.

    Usage:
        headers = (CacheHeadersBuilder()
            .max_age(180)
            .must_revalidate()
            .etag(payload_digest)
            .vary(["Accept-Encoding"])
            .build())
    """

    def __init__(self):
        self._max_age: int = 0
        self._public: bool = True
        self._must_revalidate: bool = False
        self._immutable: bool = False
        self._etag: Optional[str] = None
        self._last_modified: Optional[datetime] = None
        self._vary: List[str] = []

    def max_age(self, seconds: int) -> "CacheHeadersBuilder":
        self._max_age = seconds
        return self

    def public(self) -> "CacheHeadersBuilder":
        self._public = True
        return self

    def private(self) -> "CacheHeadersBuilder":
        self._public = False
        return self

    def must_revalidate(self) -> "CacheHeadersBuilder":
        self._must_revalidate = True
        return self

    def immutable(self) -> "CacheHeadersBuilder":
        self._immutable = True
        return self

    def etag(self, *components: Any, weak: bool = False) -> "CacheHeadersBuilder":
        """Generate and set ETag from components."""
        self._etag = generate_etag(*components, weak=weak)
        return self

    def etag_value(self, value: str) -> "CacheHeadersBuilder":
        self._etag = value
        return self

    def last_modified(self, dt: datetime) -> "CacheHeadersBuilder":
        self._last_modified = dt
        return self

    def vary(self, headers: List[str]) -> "CacheHeadersBuilder":
        self._vary.extend(headers)
        return self

    def build(self) -> Dict[str, str]:
        """Build headers dictionary."""
        headers = {}

        directives = ["public" if self._public else "private"]
        if self._max_age > 0:
            directives.append(f"max-age={self._max_age}")
        if self._must_revalidate:
            directives.append("must-revalidate")
        if self._immutable:
            directives.append("immutable")
        headers["Cache-Control"] = ", ".join(directives)

        if self._etag:
            headers["ETag"] = self._etag

        if self._last_modified:
            headers["Last-Modified"] = self._last_modified.strftime(HTTP_DATE_FORMAT)

        if self._vary:
            headers["Vary"] = ", ".join(self._vary)

        return headers

    def apply(self, response: Response) -> Response:
        """Apply headers to a FastAPI Response."""
        for key, value in self.build().items():
            response.headers[key] = value
        return response


def api_data(minutes: int) -> CacheHeadersBuilder:
    """Preset for API data that changes moderately: public, revalidated after `minutes`."""
    return (
        CacheHeadersBuilder()
        .public()
        .max_age(minutes * 60)
        .must_revalidate()
        .vary(["Accept-Encoding", "Authorization"])
    )


def static_blob(max_age_seconds: int) -> CacheHeadersBuilder:
    """Preset for edge-cached blobs, which never change under the same URL."""
    return CacheHeadersBuilder().public().max_age(max_age_seconds).immutable()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # stored timestamps are naive UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def last_modified_of(payload: Mapping[str, Any]) -> Optional[datetime]:
    """Newest `updated_at`/`created_at` among the payload's items, if any."""
    items = next(
        (payload[name] for name in ITEM_FIELDS if isinstance(payload.get(name), list)),
        None,
    )
    if not items:
        return None

    stamps = [
        _parse_timestamp(item.get("updated_at") or item.get("created_at"))
        for item in items
        if isinstance(item, dict)
    ]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def payload_etag(payload: Mapping[str, Any]) -> str:
    """ETag of a payload's content; identical whether served from cache or database."""
    content = {k: v for k, v in payload.items() if k not in SERVING_FIELDS}
    return generate_etag(json.dumps(content, sort_keys=True, default=str))


def check_not_modified(
    request: Request,
    etag: str,
    last_modified: Optional[datetime] = None,
) -> Optional[Response]:
    """
    Check if client has current version (304 Not Modified).

    If-None-Match takes precedence; If-Modified-Since is only consulted
    when the request carries no If-None-Match.

    Returns a 304 Response if client cache is valid, None otherwise.
    """
    if_none_match = request.headers.get("If-None-Match")
    if if_none_match:
        if etags_match(if_none_match, etag):
            return Response(status_code=304)
        return None

    if_modified_since = request.headers.get("If-Modified-Since")
    if last_modified is None or not if_modified_since:
        return None

    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable If-Modified-Since: {if_modified_since!r}")
        return None
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    # HTTP dates have one-second resolution
    if last_modified.replace(microsecond=0) <= since:
        return Response(status_code=304)
    return None


def cached_json_response(request: Request, payload: Mapping[str, Any], minutes: int) -> Response:
    """
    JSON response with `api_data(minutes)` headers, ETag and Last-Modified.

    Answers 304 when the client's conditional headers show it already
    holds this representation.
    """
    body = jsonable_encoder(payload)
    etag = payload_etag(body)
    builder = api_data(minutes).etag_value(etag)

    modified = last_modified_of(body)
    if modified is not None:
        builder.last_modified(modified)

    not_modified = check_not_modified(request, etag, modified)
    if not_modified is not None:
        return builder.apply(not_modified)
    return builder.apply(JSONResponse(body))
