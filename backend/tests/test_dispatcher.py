"""Processing queue tests"""
import asyncio

import pytest

from payhook.core.metrics import dispatch_dropped_counter
from payhook.models.raw_event import ProcessingStatus
from payhook.services import event_store
from payhook.services.payload_decoder import decode_payload
from payhook.tasks.dispatcher import ProcessingQueue


def store(db, order):
    body = {"order": order}
    event, _ = event_store.persist_event(db, decode_payload(body), body)
    return event.provider_event_id


@pytest.mark.high
class TestSubmit:
    def test_submit_returns_before_processing(self, db_session, session_factory, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())
        queue = ProcessingQueue(session_factory=session_factory, maxsize=10, workers=1)

        assert queue.submit(event_id) is True
        assert queue.qsize() == 1
        assert event_store.get_event(db_session, event_id).processing_status == ProcessingStatus.PENDING

    def test_full_queue_drops_and_counts(self, db_session, session_factory, make_order):
        queue = ProcessingQueue(session_factory=session_factory, maxsize=1, workers=1)
        before = dispatch_dropped_counter._value.get()

        assert queue.submit("evt_1") is True
        assert queue.submit("evt_2") is False

        assert dispatch_dropped_counter._value.get() == before + 1
        assert queue.qsize() == 1

    def test_drain_nowait_processes_queued_events(self, db_session, session_factory, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())
        queue = ProcessingQueue(session_factory=session_factory, maxsize=10, workers=1)
        queue.submit(event_id)

        assert queue.drain_nowait() == 1

        db_session.expire_all()
        assert event_store.get_event(db_session, event_id).processing_status == ProcessingStatus.PROCESSED


@pytest.mark.high
class TestWorkers:
    @pytest.mark.asyncio
    async def test_workers_process_and_stop(self, db_session, session_factory, test_user, subscription_mapping, make_order):
        event_id = store(db_session, make_order())
        queue = ProcessingQueue(session_factory=session_factory, maxsize=10, workers=2)

        queue.start()
        queue.start()  # idempotent
        assert queue.running
        queue.submit(event_id)
        await asyncio.wait_for(queue.join(), timeout=10)
        await queue.stop()

        assert not queue.running
        db_session.expire_all()
        assert event_store.get_event(db_session, event_id).processing_status == ProcessingStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_worker_survives_processing_errors(self, db_session):
        calls = []

        def broken_session():
            calls.append(1)
            raise RuntimeError("no database")

        queue = ProcessingQueue(session_factory=broken_session, maxsize=10, workers=1)
        queue.start()
        queue.submit("evt_1")
        queue.submit("evt_2")
        await asyncio.wait_for(queue.join(), timeout=10)

        assert len(calls) == 2
        assert queue.running
        await queue.stop()
