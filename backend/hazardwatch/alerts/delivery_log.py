"""
delivery_log.py — Best-effort audit trail of delivery attempts.

One DeliveryRecord is written per (subscriber, channel) attempt. Records
are append-only: nothing here updates or deletes them.

Record ids are built from subscription id + channel + a nanosecond
timestamp + an in-process sequence number, so retrying the same
subscriber/channel pair within one run never collides.

Write failures are logged with traceback and counted in
``DeliveryLogger.failed_writes``; they are never raised. An audit
failure must not make a delivered notification look failed.

Sinks:
    InMemoryDeliveryLogSink — list-backed, for tests and development
    SqlDeliveryLogSink      — SQLAlchemy async, ``notification_log`` table
"""

from __future__ import annotations

import itertools
import logging
import time
from datetime import datetime
from typing import List, Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.hazardwatch.alerts.models import (
    Channel,
    DeliveryOutcome,
    DeliveryRecord,
    TriggerType,
)
from backend.hazardwatch.core.database import Base
from backend.hazardwatch.core.errors import AuditWriteFailure
from backend.hazardwatch.core.logging_config import mask_addresses_in

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Sinks
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryLogSink:
    """Append-only destination for delivery records."""

    async def append(self, record: DeliveryRecord) -> None:
        raise NotImplementedError


class InMemoryDeliveryLogSink(DeliveryLogSink):
    def __init__(self) -> None:
        self.records: List[DeliveryRecord] = []

    async def append(self, record: DeliveryRecord) -> None:
        self.records.append(record)

    def for_channel(self, channel: Channel) -> List[DeliveryRecord]:
        return [r for r in self.records if r.channel == channel]


class NotificationLogRow(Base):
    """ORM row for one delivery record."""

    __tablename__ = "notification_log"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(100), index=True)
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    location_key: Mapped[str] = mapped_column(String(32), index=True)
    channel: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text)
    trigger_type: Mapped[str] = mapped_column(String(32))
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "NotificationLogRow":
        return cls(
            id=record.id,
            subscription_id=record.subscription_id,
            owner_id=record.owner_id,
            location_key=record.location_key,
            channel=record.channel.value,
            status=record.status.value,
            title=record.title,
            body=record.body,
            trigger_type=record.trigger_type.value,
            error=record.error,
            sent_at=record.sent_at,
        )


class SqlDeliveryLogSink(DeliveryLogSink):
    """Persist records through an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, record: DeliveryRecord) -> None:
        try:
            async with self.session_factory() as session:
                session.add(NotificationLogRow.from_record(record))
                await session.commit()
        except Exception as e:
            raise AuditWriteFailure(record.id, str(e)) from e


# ═══════════════════════════════════════════════════════════════════════════
# Logger
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryLogger:
    """Builds DeliveryRecords and appends them to a sink, swallowing failures."""

    def __init__(self, sink: Optional[DeliveryLogSink] = None):
        self.sink = sink or InMemoryDeliveryLogSink()
        self.written = 0
        self.failed_writes = 0
        self._sequence = itertools.count(1)

    def _record_id(self, subscription_id: str, channel: Channel) -> str:
        return f"{subscription_id}-{channel.value}-{time.time_ns()}-{next(self._sequence)}"

    async def record(
        self,
        subscription_id: str,
        owner_id: str,
        channel: Channel,
        outcome: DeliveryOutcome,
        title: str,
        body: str,
        trigger_type: TriggerType,
        error: Optional[str] = None,
        *,
        location_key: str = "",
    ) -> Optional[DeliveryRecord]:
        """
        Write one audit record.

        Returns
        -------
        DeliveryRecord or None
            The record written, or None if the sink failed.
        """
        record = DeliveryRecord(
            id=self._record_id(subscription_id, channel),
            subscription_id=subscription_id,
            owner_id=owner_id,
            location_key=location_key,
            channel=channel,
            status=outcome,
            title=title,
            body=body,
            trigger_type=trigger_type,
            error=error,
        )
        try:
            await self.sink.append(record)
        except Exception as e:
            self.failed_writes += 1
            logger.error(
                "Delivery log write failed for %s: %s", record.id, mask_addresses_in(e),
                extra={"subscription_id": subscription_id, "channel": channel.value},
            )
            return None

        self.written += 1
        return record
