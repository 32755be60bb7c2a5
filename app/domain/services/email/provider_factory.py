"""
Provider Factory - builds the email provider selected by EMAIL_PROVIDER.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_email_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services.email.base_provider import BaseEmailProvider

logger = get_logger(__name__)

_provider: BaseEmailProvider | None = None
_lock = threading.Lock()


def _create_provider(provider_type: str) -> BaseEmailProvider:
    if provider_type == "console":
        from app.domain.services.email.console_provider import ConsoleEmailProvider

        return ConsoleEmailProvider()

    if provider_type == "http":
        from app.domain.services.email.http_provider import HttpEmailProvider

        return HttpEmailProvider(circuit_breaker=get_email_circuit_breaker())

    raise ValueError(f"Unknown email provider: {provider_type}")


def get_email_provider() -> BaseEmailProvider:
    """Process-wide email provider."""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                _provider = _create_provider(settings.EMAIL_PROVIDER)
                logger.info(
                    "Email provider initialized",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_email_provider() -> None:
    """Drop the cached provider (for testing)"""
    global _provider
    with _lock:
        _provider = None
