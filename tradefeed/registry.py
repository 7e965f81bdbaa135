"""
Subscription registry: topic -> ordered callbacks, with ref-counting.

The registry is pure bookkeeping. It survives reconnects and is the
single source of truth for what must be re-announced to the server
after a fresh connection opens.
"""

import itertools
import logging
from typing import Dict, Iterator, List, Optional

from .types import MessageCallback, Subscription


logger = logging.getLogger("tradefeed.registry")

# Process-wide so ids stay unique even across registry instances
_id_counter = itertools.count(1)


class SubscriptionRegistry:
    """
    Tracks subscriptions per topic.

    Key behaviors:
    - Each subscription gets an id that is never reused
    - Callbacks for a topic are kept in registration order
    - A topic's ref-count is the number of live callbacks on it
    - Topics whose ref-count drops to zero are forgotten immediately
    """

    def __init__(self):
        self._by_id: Dict[str, Subscription] = {}
        # dicts keep insertion order and give O(1) removal
        self._by_topic: Dict[str, Dict[str, Subscription]] = {}

    def add(self, topic: str, callback: MessageCallback) -> str:
        """
        Register a callback for a topic.

        Returns:
            The new subscription id
        """
        if not isinstance(topic, str) or not topic:
            raise ValueError("topic must be a non-empty string")
        if not callable(callback):
            raise TypeError("callback must be callable")

        sub_id = f"sub-{next(_id_counter)}"
        subscription = Subscription(id=sub_id, topic=topic, callback=callback)

        self._by_id[sub_id] = subscription
        self._by_topic.setdefault(topic, {})[sub_id] = subscription

        logger.debug(f"Added {sub_id} on '{topic}' (refs={len(self._by_topic[topic])})")
        return sub_id

    def remove(self, sub_id: str) -> bool:
        """
        Remove a subscription.

        Returns:
            True if the topic's ref-count reached zero, False otherwise
            (including when the id is unknown)
        """
        subscription = self._by_id.pop(sub_id, None)
        if subscription is None:
            return False

        topic_subs = self._by_topic.get(subscription.topic, {})
        topic_subs.pop(sub_id, None)

        if topic_subs:
            logger.debug(f"Removed {sub_id} from '{subscription.topic}' (refs={len(topic_subs)})")
            return False

        self._by_topic.pop(subscription.topic, None)
        logger.debug(f"Removed {sub_id}, topic '{subscription.topic}' has no callbacks left")
        return True

    def get(self, sub_id: str) -> Optional[Subscription]:
        return self._by_id.get(sub_id)

    def is_active(self, sub_id: str) -> bool:
        return sub_id in self._by_id

    def ref_count(self, topic: str) -> int:
        return len(self._by_topic.get(topic, ()))

    def subscriptions_for(self, topic: str) -> List[Subscription]:
        """Snapshot of the topic's subscriptions in registration order."""
        return list(self._by_topic.get(topic, {}).values())

    def callbacks_for(self, topic: str) -> List[MessageCallback]:
        return [sub.callback for sub in self.subscriptions_for(topic)]

    def resubscribe_plan(self) -> List[str]:
        """
        Topics that must be re-announced after a reconnect.

        Ordered by when each topic became active; topics without
        callbacks are never included.
        """
        return [topic for topic, subs in self._by_topic.items() if subs]

    @property
    def topics(self) -> List[str]:
        return list(self._by_topic)

    def clear(self) -> int:
        """Remove everything. Returns count of cleared subscriptions."""
        count = len(self._by_id)
        self._by_id.clear()
        self._by_topic.clear()
        logger.info(f"Cleared all {count} subscriptions")
        return count

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, sub_id: object) -> bool:
        return sub_id in self._by_id

    def __iter__(self) -> Iterator[Subscription]:
        return iter(list(self._by_id.values()))
