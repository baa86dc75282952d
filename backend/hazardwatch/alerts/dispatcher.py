"""
dispatcher.py — Fan one notification event out to its subscribers.

This is the central coordinator that:
    1. Validates the inbound event (the only failure raised to callers)
    2. Filters subscribers through the matcher
    3. Partitions survivors into an email group and a push group
    4. Builds one (title, body) pair for the whole dispatch
    5. Calls both channel senders concurrently, once each, full batch
    6. Writes one audit record per (subscriber, channel) attempt
    7. Returns an aggregate DispatchResult

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  NotificationEvent  │  validate() → ValidationError, nothing sent
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Match           │  should_notify(subscription, event, policy)
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Partition       │  email: enable_email + resolvable address
    │                     │  push:  enable_push  + device token
    └────┬───────────┬────┘  (a subscriber may be in both)
         │           │
         ▼           ▼
    ┌─────────┐ ┌─────────┐
    │  Email  │ │  Push   │  asyncio.gather, each under wait_for(timeout)
    │  batch  │ │  batch  │  one channel failing never touches the other
    └────┬────┘ └────┬────┘
         │           │
         ▼           ▼
    ┌─────────────────────┐
    │  3. Audit log       │  one record per attempt, Semaphore-bounded,
    │                     │  stops once cancellation is observed
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  DispatchResult     │  counts, errors[], invalid_tokens
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
FAILURE ISOLATION
═══════════════════════════════════════════════════════════════════════════

    Failure                            Effect
    ───────────────────────────        ────────────────────────────────────
    One address / token rejected       that recipient failed, rest proceed
    Sender raises or times out         that channel's whole batch failed,
                                       the other channel unaffected
    Email address cannot be resolved   subscriber dropped from email only
    Audit write fails                  logged + counted, result unchanged

Status-change events whose new status is SAFE never go to email: a return
to safe is not alert-worthy for the inbox. Push still carries it when the
subscriber's preferences match.

Channel calls are shielded: cancelling a dispatch lets calls already
issued run to completion, but no further audit writes are started.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from backend.hazardwatch.alerts.channels.base import (
    EmailMessage,
    EmailSender,
    PushMessage,
    PushSender,
)
from backend.hazardwatch.alerts.delivery_log import DeliveryLogger
from backend.hazardwatch.alerts.matcher import DEFAULT_POLICY, MatchPolicy, should_notify
from backend.hazardwatch.alerts.models import (
    Channel,
    DeliveryOutcome,
    DispatchResult,
    NotificationEvent,
    RecipientOutcome,
    Subscription,
    TriggerType,
)
from backend.hazardwatch.alerts.templates import (
    build_email_content,
    build_notification_content,
    build_push_data,
)
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.logging_config import mask_addresses_in
from backend.hazardwatch.reference.models import SafetyStatus

logger = logging.getLogger(__name__)

EmailResolver = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class _Target:
    subscription: Subscription
    recipient: str


def _email_suppressed(event: NotificationEvent) -> bool:
    return (
        event.trigger_type == TriggerType.STATUS_CHANGE
        and event.new_status == SafetyStatus.SAFE
    )


class NotificationDispatcher:
    """
    Dispatch events to subscribers over email and push.

    Parameters
    ----------
    email_sender : EmailSender
    push_sender : PushSender
    delivery_logger : DeliveryLogger, optional
        Defaults to an in-memory audit log.
    email_resolver : callable, optional
        ``async (owner_id) -> address | None`` used when a subscription
        carries no email of its own.
    policy : MatchPolicy, optional
    channel_timeout : float, optional
        Seconds allowed per channel batch (CHANNEL_TIMEOUT_SECONDS).
    log_concurrency : int, optional
        Maximum concurrent audit writes (LOG_WRITE_CONCURRENCY).
    """

    def __init__(
        self,
        email_sender: EmailSender,
        push_sender: PushSender,
        delivery_logger: Optional[DeliveryLogger] = None,
        *,
        email_resolver: Optional[EmailResolver] = None,
        policy: MatchPolicy = DEFAULT_POLICY,
        channel_timeout: Optional[float] = None,
        log_concurrency: Optional[int] = None,
        push_channel_id: Optional[str] = None,
    ):
        self.email_sender = email_sender
        self.push_sender = push_sender
        self.delivery_logger = delivery_logger or DeliveryLogger()
        self.email_resolver = email_resolver
        self.policy = policy
        self.channel_timeout = channel_timeout or settings.CHANNEL_TIMEOUT_SECONDS
        self.log_concurrency = log_concurrency or settings.LOG_WRITE_CONCURRENCY
        self.push_channel_id = push_channel_id or settings.PUSH_CHANNEL_ID
        # shielded channel calls that outlived their caller
        self._inflight: Set[asyncio.Task] = set()

    # ── Partitioning ──

    async def _resolve_email(self, subscription: Subscription) -> Optional[str]:
        if subscription.email:
            return subscription.email
        if self.email_resolver is None:
            return None
        try:
            return await self.email_resolver(subscription.owner_id)
        except Exception as e:
            logger.warning(
                "Email lookup failed for subscription %s: %s",
                subscription.id, mask_addresses_in(e),
                extra={"subscription_id": subscription.id, "channel": Channel.EMAIL.value},
            )
            return None

    async def _email_targets(
        self, event: NotificationEvent, matched: Sequence[Subscription],
    ) -> List[_Target]:
        if _email_suppressed(event):
            return []
        wanting = [s for s in matched if s.enable_email]
        addresses = await asyncio.gather(*(self._resolve_email(s) for s in wanting))

        targets: List[_Target] = []
        for subscription, address in zip(wanting, addresses):
            if address:
                targets.append(_Target(subscription, address))
            else:
                logger.warning(
                    "No email address for subscription %s", subscription.id,
                    extra={"subscription_id": subscription.id, "channel": Channel.EMAIL.value},
                )
        return targets

    @staticmethod
    def _push_targets(matched: Sequence[Subscription]) -> List[_Target]:
        return [
            _Target(s, s.push_token)
            for s in matched
            if s.enable_push and s.push_token
        ]

    # ── Channel calls ──

    def _forget(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Late channel failure: %s", mask_addresses_in(task.exception()))

    async def _run_channel(
        self,
        channel: Channel,
        send: Callable[[List[str]], Awaitable[List[RecipientOutcome]]],
        targets: List[_Target],
    ) -> Tuple[List[Tuple[_Target, RecipientOutcome]], Optional[str]]:
        """
        Send one channel's batch and pair every target with its outcome.

        Returns the pairs plus a batch-level error message, if any.
        """
        if not targets:
            return [], None

        recipients = list(dict.fromkeys(t.recipient for t in targets))
        task = asyncio.ensure_future(send(recipients))
        self._inflight.add(task)
        task.add_done_callback(self._forget)

        start = time.perf_counter()
        batch_error: Optional[str] = None
        outcomes: List[RecipientOutcome] = []
        try:
            outcomes = await asyncio.wait_for(asyncio.shield(task), self.channel_timeout)
        except asyncio.TimeoutError:
            batch_error = f"{channel.value} channel timed out after {self.channel_timeout:g}s"
        except Exception as e:
            batch_error = f"{channel.value} batch failed: {e}"

        duration_ms = (time.perf_counter() - start) * 1000
        if batch_error:
            logger.error(
                "%s (%d recipients)", mask_addresses_in(batch_error), len(recipients),
                extra={
                    "channel": channel.value,
                    "recipient_count": len(recipients),
                    "duration_ms": duration_ms,
                },
            )
            failed = RecipientOutcome(recipient="", success=False, error=batch_error)
            return [(t, failed) for t in targets], batch_error

        by_recipient: Dict[str, RecipientOutcome] = {}
        for outcome in outcomes:
            by_recipient.setdefault(outcome.recipient, outcome)

        missing = RecipientOutcome(recipient="", success=False, error="No result from channel")
        return [(t, by_recipient.get(t.recipient, missing)) for t in targets], None

    # ── Audit ──

    async def _write_logs(
        self,
        event: NotificationEvent,
        title: str,
        body: str,
        attempts: List[Tuple[Channel, _Target, RecipientOutcome]],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        semaphore = asyncio.Semaphore(self.log_concurrency)

        async def write(channel: Channel, target: _Target, outcome: RecipientOutcome) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return
                await self.delivery_logger.record(
                    target.subscription.id,
                    target.subscription.owner_id,
                    channel,
                    DeliveryOutcome.SENT if outcome.success else DeliveryOutcome.FAILED,
                    title,
                    body,
                    event.trigger_type,
                    None if outcome.success else outcome.error,
                    location_key=event.location_key,
                )

        await asyncio.gather(*(write(c, t, o) for c, t, o in attempts))

    # ── Entry point ──

    async def dispatch(
        self,
        event: NotificationEvent,
        subscriptions: Sequence[Subscription],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchResult:
        """
        Deliver ``event`` to every matching subscriber.

        Raises
        ------
        ValidationError
            The event is malformed. Raised before anything is sent.
        """
        event.validate()
        log_extra = {
            "location_key": event.location_key,
            "trigger_type": event.trigger_type.value,
        }
        result = DispatchResult()

        matched = [s for s in subscriptions if should_notify(s, event, self.policy)]
        logger.info(
            "Dispatching %s for %s: %d of %d subscribers matched",
            event.trigger_type.value, event.location_key, len(matched), len(subscriptions),
            extra={**log_extra, "recipient_count": len(matched)},
        )
        if not matched:
            return result

        title, body = build_notification_content(event)
        email_targets = await self._email_targets(event, matched)
        push_targets = self._push_targets(matched)

        result.notified_count = len(
            {t.subscription.id for t in email_targets}
            | {t.subscription.id for t in push_targets}
        )

        content = build_email_content(event, title, body)
        email_message = EmailMessage(content.subject, content.html_body, content.text_body)
        push_message = PushMessage(
            title, body, data=build_push_data(event), channel_id=self.push_channel_id,
        )

        (email_pairs, email_error), (push_pairs, push_error) = await asyncio.gather(
            self._run_channel(
                Channel.EMAIL,
                lambda batch: self.email_sender.send_batch(email_message, batch),
                email_targets,
            ),
            self._run_channel(
                Channel.PUSH,
                lambda batch: self.push_sender.send_batch(push_message, batch),
                push_targets,
            ),
        )

        attempts: List[Tuple[Channel, _Target, RecipientOutcome]] = []
        for channel, pairs, batch_error in (
            (Channel.EMAIL, email_pairs, email_error),
            (Channel.PUSH, push_pairs, push_error),
        ):
            if batch_error:
                result.errors.append(batch_error)
            for target, outcome in pairs:
                attempts.append((channel, target, outcome))
                if outcome.success:
                    result.sent_by_channel[channel.value] += 1
                    continue
                result.failed_by_channel[channel.value] += 1
                if not batch_error:
                    result.errors.append(
                        f"{channel.value}:{target.subscription.id}: {outcome.error}"
                    )
                if outcome.invalid_token and target.recipient not in result.invalid_tokens:
                    result.invalid_tokens.append(target.recipient)

        if result.invalid_tokens:
            logger.warning(
                "%d invalid push tokens need cleanup", len(result.invalid_tokens),
                extra={**log_extra, "channel": Channel.PUSH.value},
            )

        if cancel_event is not None and cancel_event.is_set():
            logger.warning("Dispatch cancelled; skipping audit log writes", extra=log_extra)
        else:
            await self._write_logs(event, title, body, attempts, cancel_event)

        logger.info(
            "Dispatch complete for %s: %d notified, sent=%s failed=%s",
            event.location_key, result.notified_count,
            result.sent_by_channel, result.failed_by_channel,
            extra=log_extra,
        )
        return result
