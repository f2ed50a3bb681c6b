"""Authenticated, rate-limited client for the legacy casework API.

Every request goes through the office's token bucket. The session token is
cached per office and refreshed shortly before it expires. A 401 triggers one
re-authentication and replay; a second 401 is raised as ``AuthExpired``.

Writes (POST/PATCH/DELETE) take an idempotency key. The legacy system has no
such concept, so the key only drives this client's retry decisions: a request
that never left the machine (connect failure) is safe to resend, while a
timeout after sending is raised as ``Ambiguous`` and left to the caller to
reconcile.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.orm import Session

from casebridge.acl import LegacyRequest
from casebridge.acl.filters import REFERENCE_ENDPOINTS
from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context, mask_email
from casebridge.db.models import LegacyCredential, Office
from casebridge.db.types import utc_now
from casebridge.services.rate_limiter import RateLimiterSaturated, TokenBucket, get_bucket

logger = logging.getLogger(__name__)

NON_IDEMPOTENT_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})


# =============================================================================
# Errors
# =============================================================================


class LegacyApiError(Exception):
    """Base class for legacy API failures."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, path: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class TransportError(LegacyApiError):
    """Network failure before any response was received."""

    retryable = True


class RateLimited(LegacyApiError):
    """Legacy returned 429 repeatedly, or the local bucket is saturated."""

    retryable = True


class ServerError(LegacyApiError):
    retryable = True


class AuthError(LegacyApiError):
    """Credentials were rejected at ``/auth``."""


class AuthExpired(AuthError):
    """Still unauthorized after a fresh login."""


class Forbidden(LegacyApiError):
    pass


class NotFound(LegacyApiError):
    pass


class ValidationRejected(LegacyApiError):
    """Legacy refused the payload. ``reason`` is its own message."""

    def __init__(self, message: str, *, reason: str, status_code: int | None = None, path: str | None = None):
        super().__init__(message, status_code=status_code, path=path)
        self.reason = reason


class Ambiguous(LegacyApiError):
    """A write was sent but no response came back; it may or may not have applied."""

    def __init__(self, message: str, *, idempotency_key: str | None = None, path: str | None = None):
        super().__init__(message, path=path)
        self.idempotency_key = idempotency_key


# =============================================================================
# Session + acknowledgement caches
# =============================================================================


@dataclass(frozen=True)
class LegacyCredentials:
    email: str
    password: str
    base_url: str


@dataclass
class LegacySession:
    office_id: str
    token: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        buffer = timedelta(seconds=settings.LEGACY_TOKEN_REFRESH_BUFFER_SECONDS)
        return now + buffer < self.expires_at


_sessions: dict[str, LegacySession] = {}
_session_locks: dict[str, asyncio.Lock] = {}

# idempotency key -> response data, for writes legacy has acknowledged
_ACK_CACHE_SIZE = 2048
_acknowledged: OrderedDict[str, Any] = OrderedDict()


def _remember_ack(key: str, data: Any) -> None:
    _acknowledged[key] = data
    _acknowledged.move_to_end(key)
    while len(_acknowledged) > _ACK_CACHE_SIZE:
        _acknowledged.popitem(last=False)


def acknowledged_response(key: str) -> tuple[bool, Any]:
    if key in _acknowledged:
        return True, _acknowledged[key]
    return False, None


def reset_client_state() -> None:
    """Forget cached sessions and acknowledgements (tests, credential changes)."""
    _sessions.clear()
    _session_locks.clear()
    _acknowledged.clear()


def invalidate_session(office_id: uuid.UUID | str) -> None:
    _sessions.pop(str(office_id), None)


# =============================================================================
# Client
# =============================================================================


class LegacyApiClient:
    """One office's view of the legacy API."""

    def __init__(
        self,
        office_id: uuid.UUID | str,
        credentials: LegacyCredentials,
        *,
        bucket: TokenBucket | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.office_id = str(office_id)
        self.credentials = credentials
        self.bucket = bucket or get_bucket(self.office_id)
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=credentials.base_url.rstrip("/"),
            timeout=timeout or settings.LEGACY_TIMEOUT_SECONDS,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "LegacyApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    def _log_context(self) -> dict[str, Any]:
        return build_log_context(office_id=self.office_id)

    async def _take_token(self, path: str) -> None:
        try:
            await self.bucket.acquire()
        except RateLimiterSaturated as exc:
            raise RateLimited(str(exc), path=path) from exc

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    async def authenticate(self) -> LegacySession:
        """Log in and cache the session token for this office."""
        if settings.LEGACY_API_DISABLED:
            raise LegacyApiError("Legacy API is disabled", path="/auth")
        await self._take_token("/auth")
        try:
            response = await self.http.post(
                "/auth",
                json={
                    "email": self.credentials.email,
                    "password": self.credentials.password,
                    "locale": settings.LEGACY_LOCALE,
                },
            )
        except httpx.RequestError as exc:
            raise TransportError(f"Auth request failed: {exc.__class__.__name__}", path="/auth") from exc

        if response.status_code in (401, 403):
            logger.warning(
                "Legacy login rejected for %s",
                mask_email(self.credentials.email),
                extra=self._log_context(),
            )
            raise AuthError("Legacy credentials rejected", status_code=response.status_code, path="/auth")
        if response.status_code == 429:
            raise RateLimited("Rate limited during auth", status_code=429, path="/auth")
        if response.status_code >= 400:
            raise ServerError(
                f"Auth failed with {response.status_code}", status_code=response.status_code, path="/auth"
            )

        token = _extract_token(response)
        if not token:
            raise AuthError("Auth response did not contain a token", path="/auth")
        session = LegacySession(
            office_id=self.office_id,
            token=token,
            expires_at=utc_now() + timedelta(seconds=settings.LEGACY_TOKEN_TTL_SECONDS),
        )
        _sessions[self.office_id] = session
        logger.info("Authenticated with legacy API", extra=self._log_context())
        return session

    async def _session(self) -> LegacySession:
        session = _sessions.get(self.office_id)
        if session and session.is_fresh(utc_now()):
            return session
        lock = _session_locks.setdefault(self.office_id, asyncio.Lock())
        async with lock:
            # Another caller may have logged in while we waited
            session = _sessions.get(self.office_id)
            if session and session.is_fresh(utc_now()):
                return session
            return await self.authenticate()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def call(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Raises one of the ``LegacyApiError`` subclasses on failure.
        """
        method = method.upper()
        if settings.LEGACY_API_DISABLED:
            raise LegacyApiError("Legacy API is disabled", path=path)
        if idempotency_key:
            seen, data = acknowledged_response(idempotency_key)
            if seen:
                logger.info("Write already acknowledged, not resending %s %s", method, path)
                return data

        session = await self._session()
        reauthenticated = False
        rate_limit_retries = 0
        connect_retries = 0

        while True:
            await self._take_token(path)
            try:
                response = await self.http.request(
                    method,
                    path,
                    json=body if method != "GET" else None,
                    headers={"Authorization": session.token},
                )
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
                # Nothing reached the server, so resending cannot duplicate a write
                if connect_retries < settings.LEGACY_CONNECT_RETRIES:
                    connect_retries += 1
                    await self._sleep(_backoff(connect_retries))
                    continue
                raise TransportError(f"Could not reach legacy API: {exc.__class__.__name__}", path=path) from exc
            except httpx.RequestError as exc:
                if method in NON_IDEMPOTENT_METHODS:
                    logger.warning(
                        "Legacy %s %s outcome unknown (%s)",
                        method,
                        path,
                        exc.__class__.__name__,
                        extra=self._log_context(),
                    )
                    raise Ambiguous(
                        f"{method} {path} sent but no response received",
                        idempotency_key=idempotency_key,
                        path=path,
                    ) from exc
                raise TransportError(f"Legacy request failed: {exc.__class__.__name__}", path=path) from exc

            status = response.status_code
            if status == 401:
                if reauthenticated:
                    logger.error("Legacy API still unauthorized after re-login", extra=self._log_context())
                    raise AuthExpired("Unauthorized after re-authentication", status_code=401, path=path)
                invalidate_session(self.office_id)
                session = await self.authenticate()
                reauthenticated = True
                continue
            if status == 429:
                if rate_limit_retries >= settings.LEGACY_MAX_RATE_LIMIT_RETRIES:
                    raise RateLimited("Legacy API rate limit exceeded", status_code=429, path=path)
                rate_limit_retries += 1
                delay = _retry_after(response) or _backoff(rate_limit_retries)
                logger.warning(
                    "Legacy API returned 429, backing off %.2fs", delay, extra=self._log_context()
                )
                await self._sleep(delay)
                continue
            if status == 403:
                raise Forbidden(f"{method} {path} forbidden", status_code=403, path=path)
            if status == 404:
                raise NotFound(f"{method} {path} not found", status_code=404, path=path)
            if 400 <= status < 500:
                reason = _error_reason(response)
                raise ValidationRejected(
                    f"{method} {path} rejected: {reason}", reason=reason, status_code=status, path=path
                )
            if status >= 500:
                raise ServerError(f"{method} {path} failed with {status}", status_code=status, path=path)

            data = _decode(response)
            if idempotency_key and method in NON_IDEMPOTENT_METHODS:
                _remember_ack(idempotency_key, data)
            return data

    async def send(self, request: LegacyRequest, *, idempotency_key: str | None = None) -> Any:
        return await self.call(request.method, request.path, request.body, idempotency_key=idempotency_key)

    async def get(self, path: str) -> Any:
        return await self.call("GET", path)

    async def get_or_none(self, path: str) -> Any:
        try:
            return await self.call("GET", path)
        except NotFound:
            return None

    # -------------------------------------------------------------------------
    # Endpoint helpers
    # -------------------------------------------------------------------------

    async def get_case(self, external_id: int) -> dict | None:
        return await self.get_or_none(f"/cases/{external_id}")

    async def get_constituent(self, external_id: int) -> dict | None:
        return await self.get_or_none(f"/constituents/{external_id}")

    async def get_email(self, external_id: int) -> dict | None:
        return await self.get_or_none(f"/emails/{external_id}")

    async def get_constituent_matches(self, email_external_id: int) -> Any:
        return await self.get(f"/inbox/constituentMatches?emailID={email_external_id}")

    async def send_draft(self, email_external_id: int, *, idempotency_key: str | None = None) -> Any:
        return await self.call("POST", f"/emails/{email_external_id}/send", {}, idempotency_key=idempotency_key)

    async def list_reference(self, ref_type: str) -> list[dict]:
        try:
            path = REFERENCE_ENDPOINTS[ref_type]
        except KeyError:
            raise ValueError(f"Unknown reference type: {ref_type}")
        data = await self.get(path)
        if isinstance(data, dict):
            data = data.get("results") or data.get("data") or []
        return list(data or [])


# =============================================================================
# Helpers
# =============================================================================


def _backoff(attempt: int, base: float = 0.5, cap: float = 8.0) -> float:
    delay = min(cap, base * (2 ** (attempt - 1)))
    return delay + random.uniform(0, delay / 4)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _extract_token(response: httpx.Response) -> str | None:
    data = _decode(response)
    if isinstance(data, str):
        return data.strip() or None
    if isinstance(data, dict):
        token = data.get("token") or data.get("accessToken") or data.get("sessionToken")
        return str(token) if token else None
    return None


def _error_reason(response: httpx.Response) -> str:
    data = _decode(response)
    if isinstance(data, dict):
        for key in ("message", "error", "errors", "detail"):
            if data.get(key):
                return str(data[key])
    if isinstance(data, str) and data.strip():
        return data.strip()[:500]
    return f"HTTP {response.status_code}"


# =============================================================================
# Factory
# =============================================================================


def credentials_for_office(db: Session, office_id: uuid.UUID) -> LegacyCredentials:
    office = db.get(Office, office_id)
    if office is None:
        raise ValueError(f"Office {office_id} not found")
    credential = db.query(LegacyCredential).filter(LegacyCredential.office_id == office_id).first()
    if credential is None:
        raise AuthError(f"No legacy credentials configured for office {office_id}")
    base_url = credential.api_base_url or settings.LEGACY_BASE_URL_TEMPLATE.format(
        subdomain=office.subdomain
    )
    return LegacyCredentials(email=credential.email, password=credential.password, base_url=base_url)


def build_client(db: Session, office_id: uuid.UUID) -> LegacyApiClient:
    """Client for an office using its stored credentials."""
    return LegacyApiClient(office_id, credentials_for_office(db, office_id))
