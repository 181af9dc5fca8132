"""
Request-scoped dependencies.

The cache services live on `app.state.cache`, created once in the
application lifespan. A request marks itself critical with the
`X-Critical-Query: true` header; its database work then goes through
the shared operation queue.
"""

from typing import Optional

from fastapi import Depends, Header, Request

from marketplace.cache import CacheServices, QueryExecutor


CRITICAL_QUERY_HEADER = "X-Critical-Query"


def get_cache_services(request: Request) -> CacheServices:
    return request.app.state.cache


def is_critical_query(
    x_critical_query: Optional[str] = Header(default=None, alias=CRITICAL_QUERY_HEADER),
) -> bool:
    return (x_critical_query or "").strip().lower() == "true"


def get_query_executor(
    services: CacheServices = Depends(get_cache_services),
    critical: bool = Depends(is_critical_query),
) -> QueryExecutor:
    """QueryExecutor for this request, queued when the request is critical."""
    return services.executor(critical=critical)
