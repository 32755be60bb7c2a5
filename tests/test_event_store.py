"""
בדיקות שמירת אירועי webhook, claim ורישום כשלונות
"""
from datetime import timedelta

import pytest

from app.core.clock import utcnow
from app.core.exceptions import InvalidWebhookStatusError, NotFoundException
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus, WebhookOutcome
from app.domain.services.event_store import EventStore
from tests.conftest import make_event, failed_invoice


async def _store(db_session, provider_event_id="evt_1", event_type="invoice.payment_failed"):
    payload = make_event(event_type, failed_invoice(), event_id=provider_event_id)
    return await EventStore(db_session).store_event(provider_event_id, event_type, payload, "key-" + provider_event_id)


class TestStoreEvent:

    async def test_new_event_is_pending(self, db_session):
        result = await _store(db_session)

        assert result.created
        assert result.event.status == WebhookEventStatus.PENDING
        assert result.event.attempts == 0
        assert result.event.idempotency_key == "key-evt_1"

    async def test_redelivery_returns_existing_row_unchanged(self, db_session):
        first = await _store(db_session)
        first.event.status = WebhookEventStatus.COMPLETED
        await db_session.commit()

        second = await _store(db_session)

        assert not second.created
        assert second.event.id == first.event.id
        assert second.event.status == WebhookEventStatus.COMPLETED

    async def test_payload_is_stored_verbatim(self, db_session):
        result = await _store(db_session)
        stored = await EventStore(db_session).get(result.event.id)

        assert stored.payload["data"]["object"]["id"] == "in_001"
        assert stored.event_type == "invoice.payment_failed"


class TestClaim:

    async def test_claim_moves_to_processing_and_counts_attempt(self, db_session):
        stored = (await _store(db_session)).event
        now = utcnow()

        claimed = await EventStore(db_session).claim(stored.id, now)

        assert claimed is not None
        assert claimed.status == WebhookEventStatus.PROCESSING
        assert claimed.attempts == 1
        assert claimed.last_attempt_at == now

    async def test_second_claim_loses(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)

        assert await store.claim(stored.id) is not None
        assert await store.claim(stored.id) is None

        reloaded = await store._reload(stored.id)
        assert reloaded.attempts == 1

    async def test_failed_event_not_claimable_before_backoff(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        now = utcnow()
        await store.claim(stored.id, now)
        await store.mark_failed(stored.id, "boom", retryable=True, max_retries=5, now=now)

        assert await store.claim(stored.id, now) is None
        assert await store.claim_next(now) is None
        assert await store.claim_next(now + timedelta(hours=1)) is not None

    async def test_claim_next_prefers_never_scheduled_then_oldest(self, db_session):
        store = EventStore(db_session)
        now = utcnow()
        first = (await _store(db_session, "evt_a")).event
        second = (await _store(db_session, "evt_b")).event
        await store.claim(first.id, now - timedelta(hours=2))
        await store.mark_failed(first.id, "boom", retryable=True, max_retries=5, now=now - timedelta(hours=2))

        claimed = await store.claim_next(now)

        assert claimed.id == second.id
        assert (await store.claim_next(now)).id == first.id
        assert await store.claim_next(now) is None


class TestMarkFailed:

    async def test_retryable_failure_schedules_backoff(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        now = utcnow()
        await store.claim(stored.id, now)

        event = await store.mark_failed(stored.id, "timeout", retryable=True, max_retries=5, now=now)

        assert event.status == WebhookEventStatus.FAILED
        # כישלון ראשון משתמש בערך השני בטבלה: 5 דקות
        assert event.next_retry_at == now + timedelta(minutes=5)
        assert event.error_message == "timeout"

    async def test_non_retryable_failure_is_permanent(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        await store.claim(stored.id)

        event = await store.mark_failed(stored.id, "bad payload", retryable=False, max_retries=5)

        assert event.status == WebhookEventStatus.FAILED_PERMANENT
        assert event.next_retry_at is None

    async def test_exhausted_budget_is_permanent(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        now = utcnow()

        for attempt in range(3):
            now = now + timedelta(days=1)
            assert await store.claim(stored.id, now) is not None
            event = await store.mark_failed(stored.id, "boom", retryable=True, max_retries=3, now=now)

        assert event.attempts == 3
        assert event.status == WebhookEventStatus.FAILED_PERMANENT

    async def test_late_failure_does_not_reopen_completed_event(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        event = await store.claim(stored.id)
        await store.mark_completed(event, WebhookOutcome.HANDLED)
        await db_session.commit()

        result = await store.mark_failed(stored.id, "late timeout", retryable=True, max_retries=5)

        assert result is None
        event = await store._reload(stored.id)
        assert event.status == WebhookEventStatus.COMPLETED
        assert event.outcome == WebhookOutcome.HANDLED
        assert event.error_message is None

    async def test_failure_after_lease_expired_is_ignored(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        await store.claim(stored.id, utcnow() - timedelta(hours=1))
        assert await store.recover_stale(15, max_retries=5) == 1

        result = await store.mark_failed(stored.id, "boom", retryable=False, max_retries=5)

        assert result is None
        event = await store._reload(stored.id)
        assert event.status == WebhookEventStatus.FAILED
        assert event.error_message == "processing lease expired"


class TestMaintenance:

    async def test_recover_stale_releases_processing_rows(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        long_ago = utcnow() - timedelta(hours=1)
        await store.claim(stored.id, long_ago)

        recovered = await store.recover_stale(15, max_retries=5)

        event = await store._reload(stored.id)
        assert recovered == 1
        assert event.status == WebhookEventStatus.FAILED
        assert event.error_message == "processing lease expired"

    async def test_recover_stale_ignores_fresh_leases(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        await store.claim(stored.id)

        assert await store.recover_stale(15, max_retries=5) == 0

    async def test_recover_stale_with_spent_budget_is_permanent(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        await store.claim(stored.id, utcnow() - timedelta(hours=1))

        await store.recover_stale(15, max_retries=1)

        event = await store._reload(stored.id)
        assert event.status == WebhookEventStatus.FAILED_PERMANENT

    async def test_cleanup_deletes_only_old_terminal_events(self, db_session):
        now = utcnow()
        old = now - timedelta(days=40)
        db_session.add_all([
            WebhookEvent(provider_event_id="evt_old_done", event_type="x", payload={},
                         status=WebhookEventStatus.COMPLETED, outcome=WebhookOutcome.HANDLED, created_at=old),
            WebhookEvent(provider_event_id="evt_old_failed", event_type="x", payload={},
                         status=WebhookEventStatus.FAILED, created_at=old),
            WebhookEvent(provider_event_id="evt_new_done", event_type="x", payload={},
                         status=WebhookEventStatus.COMPLETED, created_at=now),
        ])
        await db_session.commit()

        deleted = await EventStore(db_session).cleanup_old_events(30, now)

        assert deleted == 1
        assert await EventStore(db_session).get_by_provider_id("evt_old_failed") is not None

    async def test_retry_now_clears_backoff(self, db_session):
        stored = (await _store(db_session)).event
        store = EventStore(db_session)
        await store.claim(stored.id)
        await store.mark_failed(stored.id, "boom", retryable=True, max_retries=5)

        event = await store.retry_now(stored.id)

        assert event.status == WebhookEventStatus.FAILED
        assert event.next_retry_at is None
        assert await store.claim_next() is not None

    async def test_retry_now_rejects_other_statuses(self, db_session):
        stored = (await _store(db_session)).event

        with pytest.raises(InvalidWebhookStatusError):
            await EventStore(db_session).retry_now(stored.id)

        with pytest.raises(NotFoundException):
            await EventStore(db_session).retry_now(999)
