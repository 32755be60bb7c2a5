"""
HTTP Provider - JSON POST to a transactional email API.

No retries here: a failed dunning email is logged and dropped, the next
dunning step sends its own email anyway.
"""
from __future__ import annotations

from typing import Any

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import EmailDeliveryError
from app.core.logging import get_logger
from app.domain.services.email.base_provider import BaseEmailProvider

logger = get_logger(__name__)


class HttpEmailProvider(BaseEmailProvider):
    """
    Sends through an HTTP email API:
    POST {EMAIL_API_URL}/send with {from, to, template_id, template_data}
    """

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._api_url = settings.EMAIL_API_URL
        self._api_key = settings.EMAIL_API_KEY
        self._sender = settings.EMAIL_FROM
        self._timeout = settings.EMAIL_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return "http"

    async def _post(self, payload: dict[str, Any]) -> str | None:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(
                    f"{self._api_url}/send",
                    json=payload,
                    headers=headers,
                )
            except httpx.TimeoutException:
                raise EmailDeliveryError(
                    "email API timeout",
                    details={"timeout": True, "timeout_seconds": self._timeout},
                )
            except httpx.RequestError as exc:
                raise EmailDeliveryError(
                    f"email API network error: {exc}",
                    details={"network_error": True},
                )

        if response.status_code >= 400:
            raise EmailDeliveryError.from_response("send", response)

        try:
            body = response.json()
        except ValueError:
            return None
        return body.get("id") or body.get("message_id") if isinstance(body, dict) else None

    async def send_template(
        self,
        to: str,
        template_id: str,
        template_data: dict[str, Any],
    ) -> str | None:
        payload = {
            "from": self._sender,
            "to": to,
            "template_id": template_id,
            "template_data": template_data,
        }
        return await self._circuit_breaker.execute(self._post, payload)
