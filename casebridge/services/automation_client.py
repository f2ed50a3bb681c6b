"""HTTP client for the mail automation bot."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from casebridge.core.config import settings

logger = logging.getLogger(__name__)


class AutomationError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AutomationClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.AUTOMATION_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AUTOMATION_API_KEY
        self.timeout = timeout or settings.AUTOMATION_TIMEOUT_SECONDS
        self._transport = transport

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(path, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise AutomationError(f"Automation bot unreachable: {exc}") from exc

        if response.status_code >= 400:
            # 4xx means the bot refused the request as given
            raise AutomationError(
                f"Automation bot returned {response.status_code} for {path}",
                status_code=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {"result": data}

    async def start_session(self, office_id: uuid.UUID, holder_id: str) -> dict[str, Any]:
        """Open an interactive session. The response carries ``session_handle``."""
        return await self._post(
            "/session/start", {"office_id": str(office_id), "holder_id": holder_id}
        )

    async def capture_session(self, office_id: uuid.UUID, session_handle: str) -> dict[str, Any]:
        return await self._post(
            "/session/capture",
            {"office_id": str(office_id), "session_handle": session_handle},
        )

    async def cancel_session(self, office_id: uuid.UUID, session_handle: str | None) -> dict[str, Any]:
        return await self._post(
            "/session/cancel",
            {"office_id": str(office_id), "session_handle": session_handle},
        )

    async def send_email(
        self,
        office_id: uuid.UUID,
        *,
        to: list[str],
        subject: str,
        body_html: str,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        reference: str | None = None,
    ) -> dict[str, Any]:
        return await self._post(
            "/send",
            {
                "office_id": str(office_id),
                "to": to,
                "cc": cc or [],
                "bcc": bcc or [],
                "subject": subject,
                "html": body_html,
                "reference": reference,
            },
        )


def get_automation_client() -> AutomationClient:
    return AutomationClient()
