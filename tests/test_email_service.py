"""
Tests for the email layer - app/domain/services/email/

Covers:
- BaseEmailProvider - abstract interface
- HttpEmailProvider - request shape, error mapping, circuit breaker
- EmailService - failure isolation
- Provider factory - singleton and config switch
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import Response

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError, EmailDeliveryError
from app.domain.services.email import EmailService
from app.domain.services.email.base_provider import BaseEmailProvider
from app.domain.services.email.console_provider import ConsoleEmailProvider
from app.domain.services.email.http_provider import HttpEmailProvider
from app.domain.services.email.provider_factory import get_email_provider, reset_email_provider


def _mock_client(response=None, side_effect=None):
    """httpx.AsyncClient stand-in usable as an async context manager"""
    instance = AsyncMock()
    instance.post = AsyncMock(return_value=response, side_effect=side_effect)
    instance.__aenter__ = AsyncMock(return_value=instance)
    instance.__aexit__ = AsyncMock(return_value=None)
    return instance


def _response(status_code: int, body=None, text: str = ""):
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.text = text
    response.json = MagicMock(return_value=body if body is not None else {})
    return response


class TestBaseProviderInterface:

    @pytest.mark.unit
    def test_cannot_instantiate_abstract_provider(self) -> None:
        with pytest.raises(TypeError):
            BaseEmailProvider()  # type: ignore[abstract]


class TestHttpEmailProvider:

    def _make_provider(self, threshold: int = 5) -> tuple[HttpEmailProvider, CircuitBreaker]:
        cb = CircuitBreaker("test_email", CircuitBreakerConfig(failure_threshold=threshold))
        with patch.object(settings, "EMAIL_API_URL", "https://mail.test"), \
             patch.object(settings, "EMAIL_API_KEY", "key-1"):
            provider = HttpEmailProvider(circuit_breaker=cb)
        return provider, cb

    @pytest.mark.unit
    async def test_send_posts_template_payload(self) -> None:
        provider, _ = self._make_provider()
        client = _mock_client(_response(200, {"id": "msg_123"}))

        with patch("httpx.AsyncClient", return_value=client):
            message_id = await provider.send_template(
                "ada@example.com", "payment_failed_initial", {"amount_due": "49.00"}
            )

        assert message_id == "msg_123"
        url = client.post.call_args[0][0]
        kwargs = client.post.call_args[1]
        assert url == "https://mail.test/send"
        assert kwargs["headers"] == {"Authorization": "Bearer key-1"}
        assert kwargs["json"]["to"] == "ada@example.com"
        assert kwargs["json"]["template_id"] == "payment_failed_initial"
        assert kwargs["json"]["template_data"] == {"amount_due": "49.00"}

    @pytest.mark.unit
    async def test_non_json_body_returns_no_id(self) -> None:
        provider, _ = self._make_provider()
        response = _response(202)
        response.json.side_effect = ValueError("not json")

        with patch("httpx.AsyncClient", return_value=_mock_client(response)):
            assert await provider.send_template("a@example.com", "t", {}) is None

    @pytest.mark.unit
    async def test_error_status_raises_delivery_error(self) -> None:
        provider, _ = self._make_provider()

        with patch("httpx.AsyncClient", return_value=_mock_client(_response(422, text="bad template"))):
            with pytest.raises(EmailDeliveryError) as exc_info:
                await provider.send_template("a@example.com", "missing_template", {})

        assert exc_info.value.details["status_code"] == 422
        assert exc_info.value.details["response_text"] == "bad template"

    @pytest.mark.unit
    async def test_timeout_raises_delivery_error(self) -> None:
        provider, _ = self._make_provider()
        client = _mock_client(side_effect=httpx.ReadTimeout("slow"))

        with patch("httpx.AsyncClient", return_value=client):
            with pytest.raises(EmailDeliveryError) as exc_info:
                await provider.send_template("a@example.com", "t", {})

        assert exc_info.value.details["timeout"] is True

    @pytest.mark.unit
    async def test_failures_open_the_circuit(self) -> None:
        provider, cb = self._make_provider(threshold=2)
        client = _mock_client(side_effect=httpx.ConnectError("refused"))

        with patch("httpx.AsyncClient", return_value=client):
            for _ in range(2):
                with pytest.raises(EmailDeliveryError):
                    await provider.send_template("a@example.com", "t", {})
            with pytest.raises(CircuitBreakerOpenError):
                await provider.send_template("a@example.com", "t", {})

        assert cb.is_open
        assert client.post.await_count == 2


class TestEmailService:

    @pytest.mark.unit
    async def test_success_returns_message_id(self) -> None:
        service = EmailService(ConsoleEmailProvider())

        result = await service.send_templated_email("ada@example.com", "payment_recovered", {})

        assert result.success is True
        assert result.message_id.startswith("console-")

    @pytest.mark.unit
    async def test_missing_recipient_is_skipped(self) -> None:
        provider = AsyncMock(spec=BaseEmailProvider)
        service = EmailService(provider)

        result = await service.send_templated_email(None, "payment_failed_initial", {})

        assert result.success is False
        assert result.error == "missing recipient"
        provider.send_template.assert_not_called()

    @pytest.mark.unit
    async def test_provider_error_becomes_failed_result(self) -> None:
        provider = AsyncMock(spec=BaseEmailProvider)
        provider.send_template.side_effect = EmailDeliveryError("send returned status 500")

        result = await EmailService(provider).send_templated_email("a@example.com", "t", {})

        assert result.success is False
        assert "500" in result.error

    @pytest.mark.unit
    async def test_unexpected_error_becomes_failed_result(self) -> None:
        provider = AsyncMock(spec=BaseEmailProvider)
        provider.send_template.side_effect = RuntimeError("socket closed")

        result = await EmailService(provider).send_templated_email("a@example.com", "t", {})

        assert result == result.__class__(success=False, error="socket closed")


class TestProviderFactory:

    @pytest.mark.unit
    def test_console_provider_by_default(self) -> None:
        with patch.object(settings, "EMAIL_PROVIDER", "console"):
            provider = get_email_provider()

        assert provider.provider_name == "console"
        assert get_email_provider() is provider

    @pytest.mark.unit
    def test_http_provider_uses_email_breaker(self) -> None:
        with patch.object(settings, "EMAIL_PROVIDER", "http"), \
             patch.object(settings, "EMAIL_API_URL", "https://mail.test"):
            provider = get_email_provider()

        assert provider.provider_name == "http"
        assert provider._circuit_breaker is CircuitBreaker.get_instance("email")

    @pytest.mark.unit
    def test_reset_builds_a_new_provider(self) -> None:
        first = get_email_provider()
        reset_email_provider()

        assert get_email_provider() is not first

    @pytest.mark.unit
    def test_service_resolves_provider_lazily(self) -> None:
        with patch.object(settings, "EMAIL_PROVIDER", "console"):
            service = EmailService()
            assert service.provider is get_email_provider()
