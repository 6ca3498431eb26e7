from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List

from .events import BroadcastEvent

logger = logging.getLogger(__name__)

GLOBAL_TOPIC = "global"

Callback = Callable[[BroadcastEvent], None]


@dataclass
class Subscription:
    subscriber_id: str
    topic: str
    callback: Callback

    def deliver(self, event: BroadcastEvent) -> None:
        self.callback(event)


class SubscriptionHub:
    """Registers subscribers per topic and fans events out to all of them.

    Delivery is immediate and unbuffered: a subscriber only sees events
    published while it is subscribed.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, subscriber_id: str, callback: Callback, topic: str = GLOBAL_TOPIC) -> Subscription:
        subscription = Subscription(subscriber_id=subscriber_id, topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        logger.info("New client connected %s", subscriber_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        logger.info("Client disconnected %s", subscription.subscriber_id)
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def publish(self, event: BroadcastEvent, topic: str = GLOBAL_TOPIC) -> int:
        subscriptions = list(self._subscriptions.get(topic, []))
        for subscription in subscriptions:
            subscription.deliver(event)
        return len(subscriptions)

    def subscriber_count(self, topic: str = GLOBAL_TOPIC) -> int:
        return len(self._subscriptions.get(topic, []))
