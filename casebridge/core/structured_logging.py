"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    office_id: str | None = None,
    job_id: str | None = None,
    kind: str | None = None,
    step: str | None = None,
    entity_type: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if office_id:
        context["office_id"] = str(office_id)
    if job_id:
        context["job_id"] = str(job_id)
    if kind:
        context["kind"] = kind
    if step:
        context["step"] = step
    if entity_type:
        context["entity_type"] = entity_type
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."
