"""
Tests for the Stripe webhook intake endpoint
"""
import json
import time

import pytest

from app.db.models.webhook_event import WebhookEventStatus
from app.domain.services.event_store import EventStore
from app.main import app
from tests.conftest import make_event, failed_invoice, sign_payload

URL = "/api/webhooks/stripe"


def _body(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


async def _post(test_client, body: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await test_client.post(URL, content=body, headers=headers)


class RecordingPool:

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.submitted: list[int] = []

    def submit(self, event_id: int) -> bool:
        self.submitted.append(event_id)
        return self.accept


@pytest.fixture
def recording_pool():
    pool = RecordingPool()
    app.state.webhook_pool = pool
    yield pool
    del app.state.webhook_pool


class TestSignedDelivery:

    async def test_valid_event_is_stored_pending(self, test_client, db_session):
        body = _body(make_event("invoice.payment_failed", failed_invoice(), event_id="evt_ok"))

        response = await _post(test_client, body, sign_payload(body))

        assert response.status_code == 200
        data = response.json()
        assert data["accepted"] is True
        assert data["duplicate"] is False
        stored = await EventStore(db_session).get(data["event_id"])
        assert stored.provider_event_id == "evt_ok"
        assert stored.status == WebhookEventStatus.PENDING

    async def test_new_event_is_handed_to_the_pool(self, test_client, recording_pool):
        body = _body(make_event("charge.refunded", {"id": "ch_1"}))

        response = await _post(test_client, body, sign_payload(body))

        assert recording_pool.submitted == [response.json()["event_id"]]

    async def test_full_queue_still_acknowledges(self, test_client, recording_pool):
        recording_pool.accept = False
        body = _body(make_event("charge.refunded", {"id": "ch_1"}))

        response = await _post(test_client, body, sign_payload(body))

        assert response.status_code == 200
        assert response.json()["accepted"] is True

    async def test_redelivery_is_acknowledged_as_duplicate(self, test_client, recording_pool):
        body = _body(make_event("charge.refunded", {"id": "ch_1"}, event_id="evt_dup"))

        first = await _post(test_client, body, sign_payload(body))
        second = await _post(test_client, body, sign_payload(body))

        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["event_id"] == first.json()["event_id"]
        assert recording_pool.submitted == [first.json()["event_id"]]


class TestRejectedDelivery:

    async def test_wrong_secret(self, test_client):
        body = _body(make_event("charge.refunded", {"id": "ch_1"}))

        response = await _post(test_client, body, sign_payload(body, secret="whsec_other"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2001"

    async def test_missing_signature_header(self, test_client):
        response = await _post(test_client, _body(make_event("charge.refunded", {"id": "ch_1"})))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2001"

    async def test_tampered_body(self, test_client):
        body = _body(make_event("charge.refunded", {"id": "ch_1", "amount_refunded": 100}))
        signature = sign_payload(body)
        tampered = body.replace(b"100", b"999")

        response = await _post(test_client, tampered, signature)

        assert response.status_code == 400

    async def test_stale_timestamp(self, test_client):
        body = _body(make_event("charge.refunded", {"id": "ch_1"}))

        response = await _post(test_client, body, sign_payload(body, timestamp=int(time.time()) - 3600))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2001"

    async def test_event_without_type(self, test_client, db_session):
        event = make_event("charge.refunded", {"id": "ch_1"})
        del event["type"]
        body = _body(event)

        response = await _post(test_client, body, sign_payload(body))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1001"
        assert await EventStore(db_session).get_by_provider_id(event["id"]) is None

    async def test_event_without_data_object(self, test_client):
        body = _body({"id": "evt_x", "type": "charge.refunded", "data": {}})

        response = await _post(test_client, body, sign_payload(body))

        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "data.object"

    async def test_signed_body_that_is_not_json(self, test_client):
        body = b"not json"

        response = await _post(test_client, body, sign_payload(body))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1001"
