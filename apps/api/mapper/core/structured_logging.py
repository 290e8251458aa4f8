"""Structured logging helpers (PII-safe).

Only identifiers go into log context. Publisher labels, user names, emails
and address notes stay out of logs.
"""

from typing import Any


def build_log_context(
    *,
    user_id: str | None = None,
    congregation_id: str | None = None,
    territory_id: str | None = None,
    map_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if congregation_id:
        context["congregation_id"] = congregation_id
    if territory_id:
        context["territory_id"] = territory_id
    if map_id:
        context["map_id"] = map_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
