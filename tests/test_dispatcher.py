"""
test_dispatcher.py — Tests for the notification dispatcher and audit log.

Covers:
    • Matching + partitioning into email / push groups
    • Per-recipient failure isolation within a channel
    • Whole-channel failure (exception, timeout) isolated from the other channel
    • Slow per-address email sends overlapping inside the channel timeout
    • Safe-status email suppression
    • Email resolution through the resolver, including resolver failures
    • Addresses masked in failure log lines
    • Invalid push token reporting
    • Audit records per attempt, swallowed audit failures, cancellation
    • process_location_event entry point
    • DeliveryLogger record ids and SQL sink failure wrapping

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

import pytest

from backend.hazardwatch.alerts.channels.base import EmailSender, PushMessage, PushSender
from backend.hazardwatch.alerts.channels.email import SimulatedEmailSender
from backend.hazardwatch.alerts.delivery_log import (
    DeliveryLogger,
    DeliveryLogSink,
    InMemoryDeliveryLogSink,
    SqlDeliveryLogSink,
)
from backend.hazardwatch.alerts.dispatcher import NotificationDispatcher
from backend.hazardwatch.alerts.models import (
    Channel,
    DeliveryOutcome,
    NotificationEvent,
    RecipientOutcome,
    Subscription,
    TriggerType,
)
from backend.hazardwatch.alerts.subscribers import (
    InMemorySubscriberStore,
    StaticEmailResolver,
    process_location_event,
)
from backend.hazardwatch.core.errors import AuditWriteFailure, ValidationError
from backend.hazardwatch.reference.models import SafetyStatus


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

class FakePushSender(PushSender):
    """Records every batch and answers from configured token sets."""

    name = "fake"

    def __init__(self, fail=(), invalid=(), raise_error=None, delay=0.0):
        self.fail = set(fail)
        self.invalid = set(invalid)
        self.raise_error = raise_error
        self.delay = delay
        self.calls: List[List[str]] = []

    async def send_batch(self, message: PushMessage, tokens: Sequence[str]) -> List[RecipientOutcome]:
        self.calls.append(list(tokens))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_error is not None:
            raise self.raise_error
        outcomes = []
        for token in tokens:
            if token in self.invalid:
                outcomes.append(RecipientOutcome(token, False, "DeviceNotRegistered", invalid_token=True))
            elif token in self.fail:
                outcomes.append(RecipientOutcome(token, False, "MessageRateExceeded"))
            else:
                outcomes.append(RecipientOutcome(token, True))
        return outcomes


class BrokenEmailSender(EmailSender):
    name = "broken"

    def __init__(self):
        self.calls = 0

    async def send_batch(self, message, addresses):
        self.calls += 1
        raise RuntimeError("smtp relay down")


class SlowEmailSender(EmailSender):
    """Each address takes ``delay`` seconds, like an SMTP round-trip."""

    name = "slow"

    def __init__(self, delay: float, max_concurrency: int = 10):
        self.delay = delay
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self.peak_in_flight = 0
        self.delivered: List[str] = []

    async def _deliver_one(self, message, address):
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        self.delivered.append(address)
        return f"slow-{address}"


class FailingSink(DeliveryLogSink):
    async def append(self, record):
        raise AuditWriteFailure(record.id, "disk full")


def _make_subscription(n: int, **overrides) -> Subscription:
    defaults = dict(
        id=f"sub-{n}",
        owner_id=f"user-{n}",
        location_key="10001",
        enable_email=True,
        enable_push=True,
        email=f"user{n}@example.com",
        push_token=f"ExponentPushToken[{n}]",
    )
    defaults.update(overrides)
    return Subscription(**defaults)


def _make_event(new_status=SafetyStatus.DANGER, **overrides) -> NotificationEvent:
    defaults = dict(
        trigger_type=TriggerType.STATUS_CHANGE,
        location_key="10001",
        substance_id="nitrate",
        substance_name="Nitrate",
        old_status=SafetyStatus.SAFE,
        new_status=new_status,
        current_value=16.0,
        unit="mg/L",
    )
    defaults.update(overrides)
    return NotificationEvent(**defaults)


def _make_dispatcher(email=None, push=None, sink=None, **kwargs) -> NotificationDispatcher:
    return NotificationDispatcher(
        email or SimulatedEmailSender(),
        push or FakePushSender(),
        DeliveryLogger(sink or InMemoryDeliveryLogSink()),
        channel_timeout=kwargs.pop("channel_timeout", 2.0),
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Fan-out and partial failure
# ═══════════════════════════════════════════════════════════════════════════

class TestPartialEmailFailure:
    """Five subscribers, the third address is rejected by the email channel."""

    def _dispatch(self):
        email = SimulatedEmailSender(fail_for=["user3@example.com"])
        push = FakePushSender()
        dispatcher = _make_dispatcher(email, push)
        subs = [_make_subscription(n) for n in range(1, 6)]
        result = asyncio.run(dispatcher.dispatch(_make_event(), subs))
        return result, email, push, dispatcher

    def test_counts(self):
        result, _, _, _ = self._dispatch()
        assert result.sent_by_channel == {"push": 5, "email": 4}
        assert result.failed_by_channel == {"push": 0, "email": 1}
        assert result.notified_count == 5

    def test_single_error_names_subscriber(self):
        result, _, _, _ = self._dispatch()
        assert len(result.errors) == 1
        assert result.errors[0].startswith("email:sub-3:")
        assert not result.success

    def test_other_addresses_delivered(self):
        _, email, _, _ = self._dispatch()
        assert sorted(email.delivered) == [
            "user1@example.com", "user2@example.com",
            "user4@example.com", "user5@example.com",
        ]

    def test_push_sent_as_one_batch(self):
        _, _, push, _ = self._dispatch()
        assert len(push.calls) == 1
        assert len(push.calls[0]) == 5

    def test_one_audit_record_per_attempt(self):
        _, _, _, dispatcher = self._dispatch()
        sink = dispatcher.delivery_logger.sink
        assert len(sink.records) == 10
        failed = [r for r in sink.for_channel(Channel.EMAIL) if r.status == DeliveryOutcome.FAILED]
        assert [r.subscription_id for r in failed] == ["sub-3"]
        assert failed[0].error
        assert all(r.title == "⚠️ DANGER: Nitrate" for r in sink.records)
        assert all(r.location_key == "10001" for r in sink.records)


class TestPartitioning:

    def test_unmatched_subscribers_not_contacted(self):
        push = FakePushSender()
        dispatcher = _make_dispatcher(push=push)
        sub = _make_subscription(1, alert_on_danger=False, alert_on_warning=True)
        result = asyncio.run(dispatcher.dispatch(_make_event(), [sub]))
        assert result.notified_count == 0
        assert push.calls == []
        assert dispatcher.delivery_logger.sink.records == []

    def test_both_channels_count_once(self):
        result = asyncio.run(_make_dispatcher().dispatch(_make_event(), [_make_subscription(1)]))
        assert result.notified_count == 1
        assert result.total_sent == 2

    def test_no_token_means_no_push(self):
        push = FakePushSender()
        sub = _make_subscription(1, push_token=None)
        result = asyncio.run(_make_dispatcher(push=push).dispatch(_make_event(), [sub]))
        assert push.calls == []
        assert result.sent_by_channel == {"push": 0, "email": 1}

    def test_disabled_channels_skipped(self):
        sub = _make_subscription(1, enable_email=False, enable_push=False)
        result = asyncio.run(_make_dispatcher().dispatch(_make_event(), [sub]))
        assert result.notified_count == 0
        assert result.total_sent == 0

    def test_duplicate_token_sent_once_logged_per_subscriber(self):
        push = FakePushSender()
        dispatcher = _make_dispatcher(push=push)
        subs = [
            _make_subscription(1, enable_email=False, push_token="ExponentPushToken[shared]"),
            _make_subscription(2, enable_email=False, push_token="ExponentPushToken[shared]"),
        ]
        result = asyncio.run(dispatcher.dispatch(_make_event(), subs))
        assert push.calls == [["ExponentPushToken[shared]"]]
        assert result.sent_by_channel["push"] == 2

    def test_push_message_carries_deep_link(self):
        captured = {}

        class CapturingPush(FakePushSender):
            async def send_batch(self, message, tokens):
                captured["message"] = message
                return await super().send_batch(message, tokens)

        dispatcher = _make_dispatcher(push=CapturingPush(), push_channel_id="alerts")
        asyncio.run(dispatcher.dispatch(_make_event(), [_make_subscription(1)]))
        message = captured["message"]
        assert message.data["screen"] == "Dashboard"
        assert message.channel_id == "alerts"


class TestSafeStatusEmail:

    def test_safe_status_skips_email(self):
        email = SimulatedEmailSender()
        push = FakePushSender()
        sub = _make_subscription(1, alert_on_any_change=True)
        result = asyncio.run(
            _make_dispatcher(email, push).dispatch(_make_event(SafetyStatus.SAFE), [sub])
        )
        assert email.delivered == []
        assert result.sent_by_channel == {"push": 1, "email": 0}

    def test_data_available_still_emails(self):
        email = SimulatedEmailSender()
        sub = _make_subscription(1, notify_when_data_available=True)
        event = _make_event(trigger_type=TriggerType.DATA_AVAILABLE, new_status=None)
        asyncio.run(_make_dispatcher(email).dispatch(event, [sub]))
        assert email.delivered == ["user1@example.com"]


class TestEmailResolution:

    def test_resolver_used_when_subscription_has_no_email(self):
        email = SimulatedEmailSender()
        resolver = StaticEmailResolver({"user-1": "resolved@example.com"})
        dispatcher = _make_dispatcher(email, email_resolver=resolver)
        asyncio.run(dispatcher.dispatch(_make_event(), [_make_subscription(1, email=None)]))
        assert email.delivered == ["resolved@example.com"]

    def test_unresolvable_subscriber_dropped_from_email_only(self):
        email = SimulatedEmailSender()
        push = FakePushSender()
        dispatcher = _make_dispatcher(email, push, email_resolver=StaticEmailResolver({}))
        result = asyncio.run(
            dispatcher.dispatch(_make_event(), [_make_subscription(1, email=None)])
        )
        assert email.delivered == []
        assert result.sent_by_channel == {"push": 1, "email": 0}
        assert result.success

    def test_resolver_exception_isolated(self):
        async def flaky(owner_id):
            if owner_id == "user-2":
                raise ConnectionError("identity service unavailable")
            return f"{owner_id}@example.com"

        email = SimulatedEmailSender()
        dispatcher = _make_dispatcher(email, email_resolver=flaky)
        subs = [_make_subscription(n, email=None) for n in (1, 2, 3)]
        result = asyncio.run(dispatcher.dispatch(_make_event(), subs))
        assert sorted(email.delivered) == ["user-1@example.com", "user-3@example.com"]
        assert result.sent_by_channel["push"] == 3

    def test_resolver_failure_log_masks_address(self, caplog):
        async def leaky(owner_id):
            raise LookupError(f"no verified mailbox jane.doe@example.com for {owner_id}")

        dispatcher = _make_dispatcher(email_resolver=leaky)
        with caplog.at_level(logging.WARNING, logger="backend.hazardwatch.alerts.dispatcher"):
            asyncio.run(dispatcher.dispatch(_make_event(), [_make_subscription(1, email=None)]))
        assert "jane.doe@example.com" not in caplog.text
        assert "ja***@example.com" in caplog.text

    def test_rejected_address_not_logged_in_full(self, caplog):
        email = SimulatedEmailSender(fail_for=["user3@example.com"])
        dispatcher = _make_dispatcher(email)
        with caplog.at_level(logging.WARNING):
            asyncio.run(dispatcher.dispatch(_make_event(), [_make_subscription(3)]))
        assert "user3@example.com" not in caplog.text


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Channel-level failures
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelIsolation:

    def test_email_batch_exception_does_not_affect_push(self):
        email = BrokenEmailSender()
        push = FakePushSender()
        subs = [_make_subscription(n) for n in (1, 2)]
        result = asyncio.run(_make_dispatcher(email, push).dispatch(_make_event(), subs))
        assert email.calls == 1
        assert result.failed_by_channel["email"] == 2
        assert result.sent_by_channel["push"] == 2
        assert len(result.errors) == 1
        assert "smtp relay down" in result.errors[0]

    def test_push_timeout_does_not_affect_email(self):
        push = FakePushSender(delay=1.0)
        dispatcher = _make_dispatcher(push=push, channel_timeout=0.05)
        subs = [_make_subscription(n) for n in (1, 2)]
        result = asyncio.run(dispatcher.dispatch(_make_event(), subs))
        assert result.failed_by_channel["push"] == 2
        assert result.sent_by_channel["email"] == 2
        assert any("timed out" in e for e in result.errors)

    def test_slow_addresses_finish_inside_channel_timeout(self):
        # Ten 0.1 s sends back to back would take 1 s and time out.
        email = SlowEmailSender(delay=0.1)
        dispatcher = _make_dispatcher(email, channel_timeout=0.5)
        subs = [_make_subscription(n) for n in range(1, 11)]
        result = asyncio.run(dispatcher.dispatch(_make_event(), subs))
        assert result.sent_by_channel["email"] == 10
        assert result.failed_by_channel["email"] == 0
        assert not any("timed out" in e for e in result.errors)
        email_records = dispatcher.delivery_logger.sink.for_channel(Channel.EMAIL)
        assert all(r.status == DeliveryOutcome.SENT for r in email_records)

    def test_batch_failure_logged_per_subscriber(self):
        dispatcher = _make_dispatcher(push=FakePushSender(raise_error=RuntimeError("boom")))
        subs = [_make_subscription(n) for n in (1, 2)]
        asyncio.run(dispatcher.dispatch(_make_event(), subs))
        push_records = dispatcher.delivery_logger.sink.for_channel(Channel.PUSH)
        assert len(push_records) == 2
        assert all(r.status == DeliveryOutcome.FAILED for r in push_records)

    def test_invalid_tokens_reported(self):
        push = FakePushSender(invalid={"ExponentPushToken[2]"}, fail={"ExponentPushToken[3]"})
        subs = [_make_subscription(n, enable_email=False) for n in (1, 2, 3)]
        result = asyncio.run(_make_dispatcher(push=push).dispatch(_make_event(), subs))
        assert result.invalid_tokens == ["ExponentPushToken[2]"]
        assert result.sent_by_channel["push"] == 1
        assert result.failed_by_channel["push"] == 2
        assert len(result.errors) == 2


class TestValidation:

    def test_invalid_event_raises_before_sending(self):
        email = SimulatedEmailSender()
        push = FakePushSender()
        dispatcher = _make_dispatcher(email, push)
        with pytest.raises(ValidationError):
            asyncio.run(dispatcher.dispatch(_make_event(new_status=None), [_make_subscription(1)]))
        assert email.delivered == []
        assert push.calls == []
        assert dispatcher.delivery_logger.sink.records == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Audit log
# ═══════════════════════════════════════════════════════════════════════════

class TestAuditFailures:

    def test_failed_audit_writes_do_not_change_result(self):
        dispatcher = _make_dispatcher(sink=FailingSink())
        subs = [_make_subscription(n) for n in (1, 2)]
        result = asyncio.run(dispatcher.dispatch(_make_event(), subs))
        assert result.total_sent == 4
        assert result.success
        assert dispatcher.delivery_logger.failed_writes == 4
        assert dispatcher.delivery_logger.written == 0


class TestCancellation:

    def test_cancel_before_logging_skips_all_writes(self):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            dispatcher = _make_dispatcher()
            result = await dispatcher.dispatch(
                _make_event(), [_make_subscription(1)], cancel_event=cancel,
            )
            return result, dispatcher

        result, dispatcher = asyncio.run(scenario())
        assert result.total_sent == 2
        assert dispatcher.delivery_logger.sink.records == []

    def test_cancel_during_logging_stops_new_writes(self):
        async def scenario():
            cancel = asyncio.Event()

            class CancellingSink(InMemoryDeliveryLogSink):
                async def append(self, record):
                    await super().append(record)
                    cancel.set()

            sink = CancellingSink()
            dispatcher = _make_dispatcher(sink=sink, log_concurrency=1)
            subs = [_make_subscription(n) for n in range(1, 4)]
            await dispatcher.dispatch(_make_event(), subs, cancel_event=cancel)
            return sink

        sink = asyncio.run(scenario())
        assert len(sink.records) == 1


class TestDeliveryLogger:

    def test_record_ids_unique_for_same_pair(self):
        async def scenario():
            logger = DeliveryLogger()
            return [
                await logger.record(
                    "sub-1", "user-1", Channel.PUSH, DeliveryOutcome.SENT,
                    "t", "b", TriggerType.STATUS_CHANGE,
                )
                for _ in range(3)
            ]

        records = asyncio.run(scenario())
        assert len({r.id for r in records}) == 3
        assert all(r.id.startswith("sub-1-push-") for r in records)

    def test_sql_sink_wraps_errors(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        async def scenario():
            logger = DeliveryLogger(SqlDeliveryLogSink(broken_factory))
            record = await logger.record(
                "sub-1", "user-1", Channel.EMAIL, DeliveryOutcome.FAILED,
                "t", "b", TriggerType.DATA_UPDATE, "bounced",
            )
            return logger, record

        logger, record = asyncio.run(scenario())
        assert record is None
        assert logger.failed_writes == 1

    def test_sql_sink_raises_audit_write_failure(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        sink = SqlDeliveryLogSink(broken_factory)
        record = asyncio.run(DeliveryLogger().record(
            "sub-1", "user-1", Channel.EMAIL, DeliveryOutcome.SENT,
            "t", "b", TriggerType.DATA_UPDATE,
        ))
        with pytest.raises(AuditWriteFailure):
            asyncio.run(sink.append(record))


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Pipeline entry point
# ═══════════════════════════════════════════════════════════════════════════

class TestProcessLocationEvent:

    def test_no_subscribers_returns_empty_result(self):
        push = FakePushSender()
        store = InMemorySubscriberStore([_make_subscription(1, location_key="94105")])
        result = asyncio.run(process_location_event(_make_event(), store, _make_dispatcher(push=push)))
        assert result.notified_count == 0
        assert push.calls == []

    def test_dispatches_to_location_subscribers(self):
        store = InMemorySubscriberStore([
            _make_subscription(1),
            _make_subscription(2, location_key="94105"),
        ])
        result = asyncio.run(process_location_event(_make_event(), store, _make_dispatcher()))
        assert result.notified_count == 1

    def test_invalid_event_propagates(self):
        store = InMemorySubscriberStore()
        with pytest.raises(ValidationError):
            asyncio.run(process_location_event(
                _make_event(location_key=""), store, _make_dispatcher(),
            ))

    def test_store_remove(self):
        store = InMemorySubscriberStore([_make_subscription(1), _make_subscription(2)])
        assert store.remove("sub-1")
        assert not store.remove("sub-9")
        assert len(store) == 1
