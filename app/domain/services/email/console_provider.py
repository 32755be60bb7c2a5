"""
Console Provider - logs emails instead of sending them (development default).
"""
from __future__ import annotations

import uuid
from typing import Any

from app.core.logging import get_logger
from app.domain.services.email.base_provider import BaseEmailProvider

logger = get_logger(__name__)


class ConsoleEmailProvider(BaseEmailProvider):

    @property
    def provider_name(self) -> str:
        return "console"

    async def send_template(
        self,
        to: str,
        template_id: str,
        template_data: dict[str, Any],
    ) -> str | None:
        message_id = f"console-{uuid.uuid4().hex[:12]}"
        logger.info(
            "Email (console provider)",
            extra_data={
                "to": to,
                "template_id": template_id,
                "template_data": template_data,
                "message_id": message_id,
            }
        )
        return message_id
