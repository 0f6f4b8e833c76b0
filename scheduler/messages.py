"""
Scheduled Message Dispatcher — sends text messages at a future time.

The messages table is the source of truth: a periodic scan sends every
``scheduled`` message whose due time has passed. Sends due before the
next scan also get an in-process one-shot timer so they go out on time;
timers are only a latency optimisation and are dropped on restart.

Each send is claimed ``scheduled → sending`` with a compare-and-set, so a
message is delivered at most once no matter how many scans or timers
race for it. A message left in ``sending`` (crash mid-send) is marked
``failed`` after ``stale_after_s`` instead of being re-sent; if that send
does complete afterwards, the record is corrected to ``sent``. stop()
lets claimed sends finish rather than cancelling them.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from channels.base import ChannelError, OutboundChannel
from database.store_base import BaseFlowStore
from models.schemas import (
    MessageContent, MessageDirection, MessageRecord, MessageStatus, utcnow,
)
from scheduler.base import PeriodicTask
from utils.contacts import format_chat_id

logger = structlog.get_logger()


class InstanceNotFoundError(LookupError):
    pass


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class ScheduledMessageDispatcher:

    def __init__(
        self,
        store: BaseFlowStore,
        channel: OutboundChannel,
        interval_s: float = 60,
        startup_delay_s: float = 5,
        stale_after_s: float = 300,
        wakeup_horizon_s: float = 60,
    ):
        self.store = store
        self.channel = channel
        self.stale_after = timedelta(seconds=stale_after_s)
        self.wakeup_horizon = timedelta(seconds=wakeup_horizon_s)
        self._scan = PeriodicTask(
            "scheduled_messages", self.process_due_messages,
            interval_s=interval_s, initial_delay_s=startup_delay_s,
        )
        self._timers: dict[str, asyncio.Task] = {}
        self._sending: set[asyncio.Task] = set()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        await self._scan.start()

    async def stop(self) -> None:
        await self._scan.stop()
        for task in self._timers.values():
            task.cancel()
        if self._timers:
            await asyncio.gather(*self._timers.values(), return_exceptions=True)
        self._timers.clear()
        if self._sending:
            # claimed sends finish and record their outcome
            await asyncio.gather(*list(self._sending), return_exceptions=True)

    # ── Public API ────────────────────────────────────────────

    async def schedule_message(
        self, tenant_id: str, instance_id: str, to: str, text: str, due_at: datetime,
    ) -> MessageRecord:
        """
        Persist a text message to be sent at ``due_at``.

        Raises ValueError when ``due_at`` is not in the future and
        InstanceNotFoundError when the tenant has no such instance.
        """
        due_at = _as_utc(due_at)
        now = utcnow()
        if due_at <= now:
            raise ValueError("Scheduled time must be in the future")
        if not text:
            raise ValueError("Message text is required")

        instance = await self.store.get_instance(instance_id)
        if instance is None or instance.tenant_id != tenant_id:
            raise InstanceNotFoundError(f"WhatsApp instance {instance_id} not found")

        record = MessageRecord(
            tenant_id=tenant_id,
            instance_id=instance_id,
            direction=MessageDirection.OUTGOING,
            from_number=instance.phone_number or instance_id,
            to=to,
            type="text",
            content=MessageContent(text=text),
            status=MessageStatus.SCHEDULED,
            due_at=due_at,
            timestamp=due_at,
        )
        await self.store.add_message(record)
        logger.info("message_scheduled", record_id=record.id, instance_id=instance_id,
                    due_at=due_at.isoformat())
        if due_at - now <= self.wakeup_horizon:
            self._arm_timer(record.id, due_at, now)
        return record

    async def cancel_message(self, record_id: str) -> bool:
        """Cancel a message that has not been claimed yet."""
        cancelled = await self.store.transition_message(
            record_id, MessageStatus.SCHEDULED, MessageStatus.CANCELLED,
        )
        timer = self._timers.pop(record_id, None)
        if timer:
            timer.cancel()
        if cancelled:
            logger.info("scheduled_message_cancelled", record_id=record_id)
        return cancelled

    async def process_due_messages(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        One scan: fail stale claims, send everything due, arm timers for
        messages due before the next scan.

        Returns counts: {"due", "sent", "failed", "skipped", "stale"}.
        """
        now = now or utcnow()
        stats = {"due": 0, "sent": 0, "failed": 0, "skipped": 0, "stale": 0}

        for record in await self.store.list_stale_sending(now - self.stale_after):
            if await self.store.transition_message(
                record.id, MessageStatus.SENDING, MessageStatus.FAILED,
                error="send interrupted before confirmation",
            ):
                stats["stale"] += 1
                logger.warning("scheduled_message_stale", record_id=record.id)

        due = await self.store.list_due_messages(now)
        stats["due"] = len(due)
        for record in due:
            result = await self.dispatch(record, now)
            stats[result] += 1

        for record in await self.store.list_due_messages(now + self.wakeup_horizon):
            if record.due_at and record.due_at > now:
                self._arm_timer(record.id, record.due_at, now)

        if stats["due"] or stats["stale"]:
            logger.info("scheduled_messages_processed", **stats)
        return stats

    async def dispatch(self, record: MessageRecord, now: Optional[datetime] = None) -> str:
        """
        Claim and send one message. Returns "sent", "failed" or "skipped"
        (someone else claimed it, or it was cancelled).

        Once claimed, the send runs to completion even if the caller is
        cancelled; stop() waits for it.
        """
        now = now or utcnow()
        claimed = await self.store.transition_message(
            record.id, MessageStatus.SCHEDULED, MessageStatus.SENDING,
            attempts=record.attempts + 1, claimed_at=now,
        )
        if not claimed:
            return "skipped"

        task = asyncio.create_task(self._deliver(record), name=f"scheduled_send:{record.id}")
        self._sending.add(task)
        task.add_done_callback(self._sending.discard)
        return await asyncio.shield(task)

    async def _deliver(self, record: MessageRecord) -> str:
        log = logger.bind(record_id=record.id, instance_id=record.instance_id, to=record.to)
        try:
            message_id = await self.channel.send_text(
                record.tenant_id, record.instance_id,
                format_chat_id(record.to), record.content.text,
            )
        except ChannelError as e:
            await self.store.transition_message(
                record.id, MessageStatus.SENDING, MessageStatus.FAILED, error=str(e),
            )
            log.warning("scheduled_message_failed", error=str(e))
            return "failed"
        except Exception as e:
            await self.store.transition_message(
                record.id, MessageStatus.SENDING, MessageStatus.FAILED, error=str(e),
            )
            log.error("scheduled_message_failed", error=str(e), exc_info=True)
            return "failed"

        if not await self._record_sent(record.id, message_id or None, log):
            log.error("scheduled_message_unrecorded", message_id=message_id)
        await self.store.increment_messages_sent(record.instance_id)
        log.info("scheduled_message_sent", message_id=message_id)
        return "sent"

    async def _record_sent(self, record_id: str, message_id: Optional[str], log: Any) -> bool:
        """
        Mark a delivered message ``sent``.

        The record is normally still ``sending``; it is ``failed`` when the
        stale sweep gave up on a slow send. A channel id already stored on
        another record is dropped rather than losing the status.
        """
        sent_at = utcnow()
        fields = {"sent_at": sent_at, "timestamp": sent_at, "error": None}
        for expected in (MessageStatus.SENDING, MessageStatus.FAILED):
            recorded = bool(message_id) and await self.store.transition_message(
                record_id, expected, MessageStatus.SENT, message_id=message_id, **fields,
            )
            if not recorded and await self.store.transition_message(
                record_id, expected, MessageStatus.SENT, **fields,
            ):
                if message_id:
                    log.warning("scheduled_message_id_conflict", message_id=message_id)
                recorded = True
            if recorded:
                if expected == MessageStatus.FAILED:
                    log.warning("scheduled_message_confirmed_after_stale", message_id=message_id)
                return True
        return False

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # ── Timers ────────────────────────────────────────────────

    def _arm_timer(self, record_id: str, due_at: datetime, now: datetime) -> None:
        if record_id in self._timers:
            return
        delay = max((due_at - now).total_seconds(), 0.0)
        self._timers[record_id] = asyncio.create_task(
            self._fire(record_id, delay), name=f"scheduled_message:{record_id}",
        )

    async def _fire(self, record_id: str, delay: float) -> Any:
        try:
            await asyncio.sleep(delay)
            record = await self.store.get_message(record_id)
            if record is not None and record.status == MessageStatus.SCHEDULED:
                return await self.dispatch(record)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("scheduled_message_timer_failed", record_id=record_id, error=str(e))
            return None
        finally:
            self._timers.pop(record_id, None)
