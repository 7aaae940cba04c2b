"""Registry of live connections keyed by user id and meeting id.

Publishing is fire-and-forget: a connection that is gone simply misses the
event. ``send`` on a connection must not block, since workers publish from
their own threads.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, Optional, Protocol, Set, Union

from loguru import logger

from ..schemas.meeting import ProgressEvent

JOB_UPDATE = "job-update"


class Connection(Protocol):
    user_id: str

    def send(self, message: dict) -> None:
        ...


class ProgressHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: Dict[str, Set[Connection]] = defaultdict(set)
        self._by_meeting: Dict[str, Set[Connection]] = defaultdict(set)
        self._meetings_of: Dict[Connection, Set[str]] = defaultdict(set)

    def register(self, conn: Connection, user_id: str) -> None:
        with self._lock:
            self._by_user[user_id].add(conn)
        logger.bind(tag="ws.hub").info(f"user {user_id} connected")

    def unregister(self, conn: Connection) -> None:
        with self._lock:
            user_conns = self._by_user.get(conn.user_id)
            if user_conns is not None:
                user_conns.discard(conn)
                if not user_conns:
                    del self._by_user[conn.user_id]
            for meeting_id in self._meetings_of.pop(conn, set()):
                self._discard_meeting(conn, meeting_id)
        logger.bind(tag="ws.hub").info(f"user {conn.user_id} disconnected")

    def subscribe_meeting(self, conn: Connection, meeting_id: str) -> None:
        with self._lock:
            self._by_meeting[meeting_id].add(conn)
            self._meetings_of[conn].add(meeting_id)
        logger.bind(tag="ws.hub").debug(f"user {conn.user_id} subscribed to meeting {meeting_id}")

    def unsubscribe_meeting(self, conn: Connection, meeting_id: str) -> None:
        with self._lock:
            self._discard_meeting(conn, meeting_id)
            subscribed = self._meetings_of.get(conn)
            if subscribed is not None:
                subscribed.discard(meeting_id)
                if not subscribed:
                    del self._meetings_of[conn]
        logger.bind(tag="ws.hub").debug(f"user {conn.user_id} unsubscribed from meeting {meeting_id}")

    def _discard_meeting(self, conn: Connection, meeting_id: str) -> None:
        conns = self._by_meeting.get(meeting_id)
        if conns is None:
            return
        conns.discard(conn)
        if not conns:
            del self._by_meeting[meeting_id]

    def publish(
        self,
        user_id: str,
        event: Union[ProgressEvent, dict],
        meeting_id: Optional[str] = None,
        event_name: str = JOB_UPDATE,
    ) -> int:
        """Send ``event`` to the user's connections and the meeting's subscribers.

        A connection found in both sets receives the event once. Returns the
        number of connections the event was handed to.
        """
        payload = event.to_message() if isinstance(event, ProgressEvent) else event
        message = {"event": event_name, "data": payload}
        with self._lock:
            targets = set(self._by_user.get(user_id, ()))
            if meeting_id:
                targets |= self._by_meeting.get(meeting_id, set())
        delivered = 0
        for conn in targets:
            try:
                conn.send(message)
                delivered += 1
            except Exception as exc:
                logger.bind(tag="ws.hub").warning(f"drop {event_name} for user {conn.user_id}: {exc!r}")
        return delivered

    def connection_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._by_user.get(user_id, ()))
            return sum(len(conns) for conns in self._by_user.values())

    def subscriber_count(self, meeting_id: str) -> int:
        with self._lock:
            return len(self._by_meeting.get(meeting_id, ()))
