"""Tests for the scheduled message dispatcher."""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from channels.base import ChannelError
from models.schemas import MessageStatus, utcnow
from scheduler.messages import InstanceNotFoundError, ScheduledMessageDispatcher
from tests.builders import INSTANCE, TENANT, GatedChannel


@pytest.fixture
def dispatcher(store, channel):
    return ScheduledMessageDispatcher(store, channel, wakeup_horizon_s=0)


@pytest_asyncio.fixture
async def with_instance(store, ready_instance):
    await store.upsert_instance(ready_instance)
    return ready_instance


async def _schedule(dispatcher, minutes=10, text="Your order shipped", to="9876543210"):
    return await dispatcher.schedule_message(
        TENANT, INSTANCE, to, text, utcnow() + timedelta(minutes=minutes),
    )


class TestScheduling:
    @pytest.mark.asyncio
    async def test_creates_scheduled_record(self, dispatcher, store, with_instance):
        record = await _schedule(dispatcher)
        stored = await store.get_message(record.id)
        assert stored.status == MessageStatus.SCHEDULED
        assert stored.direction.value == "outgoing"
        assert stored.from_number == "919800000000"
        assert stored.content.text == "Your order shipped"
        assert stored.message_id is None
        assert dispatcher.pending_timers == 0

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, dispatcher, with_instance):
        with pytest.raises(ValueError, match="future"):
            await _schedule(dispatcher, minutes=-1)

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, dispatcher, with_instance):
        with pytest.raises(ValueError):
            await _schedule(dispatcher, text="")

    @pytest.mark.asyncio
    async def test_unknown_instance(self, dispatcher):
        with pytest.raises(InstanceNotFoundError):
            await _schedule(dispatcher)

    @pytest.mark.asyncio
    async def test_foreign_tenant_instance(self, dispatcher, store, ready_instance):
        ready_instance.tenant_id = "someone_else"
        await store.upsert_instance(ready_instance)
        with pytest.raises(InstanceNotFoundError):
            await _schedule(dispatcher)

    @pytest.mark.asyncio
    async def test_cancel(self, dispatcher, store, with_instance):
        record = await _schedule(dispatcher)
        assert await dispatcher.cancel_message(record.id)
        assert (await store.get_message(record.id)).status == MessageStatus.CANCELLED
        assert not await dispatcher.cancel_message(record.id)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_due_messages_sent(self, dispatcher, store, channel, with_instance):
        record = await _schedule(dispatcher, minutes=5)
        later = utcnow() + timedelta(minutes=6)

        stats = await dispatcher.process_due_messages(later)
        assert stats == {"due": 1, "sent": 1, "failed": 0, "skipped": 0, "stale": 0}
        assert channel.sent[0]["chat_id"] == "919876543210@c.us"
        assert channel.sent[0]["text"] == "Your order shipped"

        stored = await store.get_message(record.id)
        assert stored.status == MessageStatus.SENT
        assert stored.message_id == "wamid.1"
        assert stored.attempts == 1
        assert stored.sent_at is not None
        assert (await store.get_instance(INSTANCE)).messages_sent == 1

    @pytest.mark.asyncio
    async def test_not_yet_due(self, dispatcher, channel, with_instance):
        await _schedule(dispatcher, minutes=30)
        stats = await dispatcher.process_due_messages(utcnow())
        assert stats["due"] == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_sent_only_once(self, dispatcher, channel, with_instance):
        await _schedule(dispatcher, minutes=1)
        later = utcnow() + timedelta(minutes=2)
        await dispatcher.process_due_messages(later)
        stats = await dispatcher.process_due_messages(later)
        assert stats["due"] == 0
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_claimed_elsewhere_is_skipped(self, dispatcher, store, channel, with_instance):
        record = await _schedule(dispatcher, minutes=1)
        stale_copy = await store.get_message(record.id)
        await store.transition_message(record.id, MessageStatus.SCHEDULED, MessageStatus.SENDING)

        assert await dispatcher.dispatch(stale_copy) == "skipped"
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_channel_failure_marks_failed(self, dispatcher, store, channel, with_instance):
        record = await _schedule(dispatcher, minutes=1)
        channel.fail_with = ChannelError("client not ready")

        stats = await dispatcher.process_due_messages(utcnow() + timedelta(minutes=2))
        assert stats["failed"] == 1
        stored = await store.get_message(record.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.error == "client not ready"
        assert (await store.get_instance(INSTANCE)).messages_sent == 0

    @pytest.mark.asyncio
    async def test_stale_sending_marked_failed(self, dispatcher, store, with_instance):
        record = await _schedule(dispatcher, minutes=1)
        claimed = utcnow() - timedelta(minutes=10)
        await store.transition_message(record.id, MessageStatus.SCHEDULED, MessageStatus.SENDING,
                                       claimed_at=claimed)

        stats = await dispatcher.process_due_messages(utcnow())
        assert stats["stale"] == 1
        assert (await store.get_message(record.id)).status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_duplicate_channel_id_still_sent(self, dispatcher, store, channel, with_instance):
        first = await _schedule(dispatcher, minutes=1)
        await store.transition_message(first.id, MessageStatus.SCHEDULED, MessageStatus.SENT,
                                       message_id="wamid.1")
        second = await _schedule(dispatcher, minutes=1, text="again")

        assert await dispatcher.dispatch(await store.get_message(second.id)) == "sent"
        stored = await store.get_message(second.id)
        assert stored.status == MessageStatus.SENT
        assert stored.message_id is None


class TestTimers:
    @pytest.mark.asyncio
    async def test_near_message_gets_timer(self, store, channel, with_instance):
        dispatcher = ScheduledMessageDispatcher(store, channel, wakeup_horizon_s=60)
        record = await dispatcher.schedule_message(
            TENANT, INSTANCE, "9876543210", "soon", utcnow() + timedelta(milliseconds=50),
        )
        assert dispatcher.pending_timers == 1

        await asyncio.sleep(0.2)
        assert dispatcher.pending_timers == 0
        assert (await store.get_message(record.id)).status == MessageStatus.SENT
        assert channel.texts == ["soon"]

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, store, channel, with_instance):
        dispatcher = ScheduledMessageDispatcher(store, channel, wakeup_horizon_s=60)
        await dispatcher.schedule_message(
            TENANT, INSTANCE, "9876543210", "soon", utcnow() + timedelta(seconds=30),
        )
        await dispatcher.stop()
        assert dispatcher.pending_timers == 0
        assert channel.sent == []


class TestInFlightSends:
    @pytest.fixture
    def channel(self):
        return GatedChannel(gate="slow")

    @pytest.mark.asyncio
    async def test_send_outliving_stale_sweep_is_sent(self, dispatcher, store, channel,
                                                      with_instance):
        record = await _schedule(dispatcher, minutes=1, text="slow delivery")
        sending = asyncio.create_task(dispatcher.dispatch(await store.get_message(record.id)))
        await asyncio.wait_for(channel.entered.wait(), timeout=2)

        stats = await dispatcher.process_due_messages(utcnow() + timedelta(seconds=400))
        assert stats["stale"] == 1
        assert (await store.get_message(record.id)).status == MessageStatus.FAILED

        channel.release.set()
        assert await sending == "sent"
        stored = await store.get_message(record.id)
        assert stored.status == MessageStatus.SENT
        assert stored.message_id == "wamid.1"
        assert stored.error is None
        assert (await store.get_instance(INSTANCE)).messages_sent == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_claimed_send(self, store, channel, with_instance):
        dispatcher = ScheduledMessageDispatcher(store, channel, wakeup_horizon_s=60)
        record = await dispatcher.schedule_message(
            TENANT, INSTANCE, "9876543210", "slow but due", utcnow() + timedelta(milliseconds=20),
        )
        await asyncio.wait_for(channel.entered.wait(), timeout=2)

        stopping = asyncio.create_task(dispatcher.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()
        assert dispatcher.pending_timers == 0

        channel.release.set()
        await asyncio.wait_for(stopping, timeout=2)
        stored = await store.get_message(record.id)
        assert stored.status == MessageStatus.SENT
        assert channel.texts == ["slow but due"]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_send(self, dispatcher, store, channel,
                                                        with_instance):
        record = await _schedule(dispatcher, minutes=1, text="slow delivery")
        caller = asyncio.create_task(dispatcher.dispatch(await store.get_message(record.id)))
        await asyncio.wait_for(channel.entered.wait(), timeout=2)

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        assert (await store.get_message(record.id)).status == MessageStatus.SENDING

        channel.release.set()
        await dispatcher.stop()
        assert (await store.get_message(record.id)).status == MessageStatus.SENT
