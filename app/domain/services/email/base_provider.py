"""
Base interface for email providers.

Business logic depends only on this interface; each provider handles its own
transport (HTTP API, console) and circuit breaking.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class BaseEmailProvider(ABC):
    """Uniform interface for sending templated transactional email."""

    @abstractmethod
    async def send_template(
        self,
        to: str,
        template_id: str,
        template_data: dict[str, Any],
    ) -> str | None:
        """
        Send one templated email.

        Args:
            to: recipient address.
            template_id: provider-side template name, e.g. payment_failed_initial.
            template_data: values rendered into the template.

        Returns:
            The provider message id, when the provider returns one.

        Raises:
            EmailDeliveryError: when the provider rejects or fails the send.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider name for logs and diagnostics."""
