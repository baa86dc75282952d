"""
subscribers.py — Subscriber lookup, email resolution and the pipeline entry.

The subscriber store and the identity service live outside this package;
these are the contracts the dispatcher relies on, plus in-memory versions
used in development and tests.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from backend.hazardwatch.alerts.dispatcher import NotificationDispatcher
from backend.hazardwatch.alerts.models import DispatchResult, NotificationEvent, Subscription

logger = logging.getLogger(__name__)


class SubscriberStore(Protocol):
    """Index lookup of subscriptions by location key. Read-only here."""

    async def by_location(self, location_key: str) -> List[Subscription]:
        ...


class InMemorySubscriberStore:
    """Dict-backed SubscriberStore."""

    def __init__(self, subscriptions: Iterable[Subscription] = ()):
        self._by_location: Dict[str, List[Subscription]] = defaultdict(list)
        for subscription in subscriptions:
            self.add(subscription)

    def add(self, subscription: Subscription) -> None:
        self._by_location[subscription.location_key].append(subscription)

    def remove(self, subscription_id: str) -> bool:
        for location_key, subs in self._by_location.items():
            kept = [s for s in subs if s.id != subscription_id]
            if len(kept) != len(subs):
                self._by_location[location_key] = kept
                return True
        return False

    def __len__(self) -> int:
        return sum(len(subs) for subs in self._by_location.values())

    async def by_location(self, location_key: str) -> List[Subscription]:
        return list(self._by_location.get(location_key, ()))


class StaticEmailResolver:
    """Resolve owner ids from a fixed mapping. Unknown owners → None."""

    def __init__(self, addresses: Mapping[str, str]):
        self.addresses = dict(addresses)

    async def __call__(self, owner_id: str) -> Optional[str]:
        return self.addresses.get(owner_id)


async def process_location_event(
    event: NotificationEvent,
    store: SubscriberStore,
    dispatcher: NotificationDispatcher,
) -> DispatchResult:
    """
    Run the whole pipeline for one event.

    Validation errors propagate. Everything past validation ends up in the
    returned DispatchResult.
    """
    event.validate()
    subscriptions = await store.by_location(event.location_key)
    if not subscriptions:
        logger.info(
            "No subscribers for %s", event.location_key,
            extra={"location_key": event.location_key},
        )
        return DispatchResult()
    return await dispatcher.dispatch(event, subscriptions)
