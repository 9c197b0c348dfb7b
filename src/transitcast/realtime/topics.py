"""
Topic registry: route id -> subscriber set.

A single re-entrant lock guards both the forward (route -> clients) and
reverse (client -> routes) indexes, so every snapshot handed out reflects
one consistent point in time. Callers receive frozensets and never a
reference into the registry's own sets.
"""

import threading
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Set, Any

import structlog
from pydantic import ConfigDict, Field

from ..data.models import FEEDBACK_TOPIC, BaseDataModel, utcnow
from .clock import Clock, SystemClock


logger = structlog.get_logger(__name__)


def topic_name_for(route_id: str) -> str:
    if route_id == FEEDBACK_TOPIC:
        return FEEDBACK_TOPIC
    return f"route_{route_id}"


class Topic(BaseDataModel):
    """Point-in-time view of one topic."""

    model_config = ConfigDict(frozen=True)

    route_id: str
    topic_name: str
    created_at: datetime = Field(default_factory=utcnow)
    subscribers: FrozenSet[str] = frozenset()

    @property
    def subscriber_count(self) -> int:
        return len(self.subscribers)


class TopicRegistry:
    """Owns topic membership for every route."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._created: Dict[str, datetime] = {}
        self._members: Dict[str, Set[str]] = {}
        self._client_routes: Dict[str, Set[str]] = {}

    def _ensure(self, route_id: str) -> None:
        if route_id not in self._members:
            self._members[route_id] = set()
            self._created[route_id] = self._clock.now()
            logger.debug("Topic created", topic=topic_name_for(route_id))

    def _snapshot(self, route_id: str) -> Topic:
        return Topic(
            route_id=route_id,
            topic_name=topic_name_for(route_id),
            created_at=self._created[route_id],
            subscribers=frozenset(self._members[route_id]),
        )

    def ensure_topic(self, route_id: str) -> Topic:
        """Create the topic for ``route_id`` if needed; idempotent."""
        with self._lock:
            self._ensure(route_id)
            return self._snapshot(route_id)

    def get_topic(self, route_id: str) -> Optional[Topic]:
        with self._lock:
            if route_id not in self._members:
                return None
            return self._snapshot(route_id)

    def subscribe(self, route_id: str, client_id: str) -> bool:
        """
        Add ``client_id`` to the route's topic, creating the topic lazily.

        Returns:
            bool: False if the client was already subscribed
        """
        with self._lock:
            self._ensure(route_id)
            members = self._members[route_id]
            if client_id in members:
                return False

            members.add(client_id)
            self._client_routes.setdefault(client_id, set()).add(route_id)

        logger.info("Client subscribed", client_id=client_id, topic=topic_name_for(route_id))
        return True

    def unsubscribe(self, route_id: str, client_id: str) -> bool:
        """
        Remove ``client_id`` from the route's topic.

        Removing a non-member is a no-op and returns False. The topic itself
        stays registered even when its subscriber set becomes empty.
        """
        with self._lock:
            members = self._members.get(route_id)
            if members is None or client_id not in members:
                return False

            members.discard(client_id)
            routes = self._client_routes.get(client_id)
            if routes is not None:
                routes.discard(route_id)
                if not routes:
                    del self._client_routes[client_id]

        logger.info("Client unsubscribed", client_id=client_id, topic=topic_name_for(route_id))
        return True

    def unsubscribe_all(self, client_id: str) -> int:
        """Drop every subscription of ``client_id``; returns how many were removed."""
        with self._lock:
            routes = self._client_routes.pop(client_id, set())
            for route_id in routes:
                self._members[route_id].discard(client_id)

        if routes:
            logger.info("Client unsubscribed from all topics", client_id=client_id, count=len(routes))
        return len(routes)

    def subscribers_of(self, route_id: str) -> FrozenSet[str]:
        """Snapshot of the route's subscribers; empty if the topic does not exist."""
        with self._lock:
            return frozenset(self._members.get(route_id, ()))

    def topics_for(self, client_id: str) -> FrozenSet[str]:
        """Route ids ``client_id`` is subscribed to."""
        with self._lock:
            return frozenset(self._client_routes.get(client_id, ()))

    def is_subscribed(self, route_id: str, client_id: str) -> bool:
        with self._lock:
            return client_id in self._members.get(route_id, ())

    def topics(self) -> Dict[str, Topic]:
        with self._lock:
            return {route_id: self._snapshot(route_id) for route_id in self._members}

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            subscriptions = sum(len(members) for members in self._members.values())
            return {
                "total_topics": len(self._members),
                "total_subscriptions": subscriptions,
                "total_clients": len(self._client_routes),
                "topics": {
                    topic_name_for(route_id): len(members)
                    for route_id, members in self._members.items()
                },
            }
