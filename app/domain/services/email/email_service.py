"""
Email Service - templated notifications with failure isolation.

send_templated_email never raises. Callers get an EmailResult and decide
whether to record the send.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.domain.services.email.base_provider import BaseEmailProvider
from app.domain.services.email.provider_factory import get_email_provider

logger = get_logger(__name__)


@dataclass
class EmailResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class EmailService:

    def __init__(self, provider: BaseEmailProvider | None = None):
        self._provider = provider

    @property
    def provider(self) -> BaseEmailProvider:
        if self._provider is None:
            self._provider = get_email_provider()
        return self._provider

    async def send_templated_email(
        self,
        to: str | None,
        template_id: str,
        template_data: dict[str, Any],
    ) -> EmailResult:
        if not to:
            logger.warning(
                "Email skipped, recipient has no address",
                extra_data={"template_id": template_id}
            )
            return EmailResult(success=False, error="missing recipient")

        try:
            message_id = await self.provider.send_template(to, template_id, template_data)
        except AppException as e:
            logger.error(
                "Email delivery failed",
                extra_data={
                    "template_id": template_id,
                    "error_code": e.error_code.value,
                    "error": e.message,
                },
            )
            return EmailResult(success=False, error=e.message)
        except Exception as e:
            logger.error(
                "Unexpected email delivery error",
                extra_data={"template_id": template_id, "error": str(e)},
                exc_info=True,
            )
            return EmailResult(success=False, error=str(e))

        return EmailResult(success=True, message_id=message_id)
