"""
In-process pub/sub for websocket connections.

Two namespaces are served: ``exam`` (start/end broadcasts per exam room) and
``proctoring`` (alerts for observing teachers, warnings for one student).
Membership lives only as long as the connection.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

EXAM_NAMESPACE = "exam"
PROCTORING_NAMESPACE = "proctoring"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def exam_room(exam_id) -> str:
    return f"exam:{exam_id}"


def proctoring_room(exam_id) -> str:
    return f"proctoring:{exam_id}"


class RealtimeHub:
    def __init__(self):
        # connections are keyed by id(); Starlette websockets are not hashable
        self._rooms: Dict[Tuple[str, str], Dict[int, Connection]] = defaultdict(dict)
        self._users: Dict[Tuple[str, str], Dict[int, Connection]] = defaultdict(dict)
        self._memberships: Dict[int, Set[Tuple[str, str]]] = defaultdict(set)
        self._identities: Dict[int, Tuple[str, str]] = {}

    # ---- membership ----
    def register(self, namespace: str, connection: Connection, user_id: str) -> None:
        self._identities[id(connection)] = (namespace, str(user_id))
        self._users[(namespace, str(user_id))][id(connection)] = connection

    def join(self, namespace: str, connection: Connection, room: str) -> None:
        self._rooms[(namespace, room)][id(connection)] = connection
        self._memberships[id(connection)].add((namespace, room))

    def leave(self, namespace: str, connection: Connection, room: str) -> None:
        key = (namespace, room)
        members = self._rooms.get(key)
        if members is not None:
            members.pop(id(connection), None)
            if not members:
                del self._rooms[key]
        self._memberships.get(id(connection), set()).discard(key)

    def disconnect(self, connection: Connection) -> None:
        for namespace, room in list(self._memberships.pop(id(connection), set())):
            self.leave(namespace, connection, room)
        identity = self._identities.pop(id(connection), None)
        if identity is not None:
            users = self._users.get(identity)
            if users is not None:
                users.pop(id(connection), None)
                if not users:
                    del self._users[identity]

    def room_size(self, namespace: str, room: str) -> int:
        return len(self._rooms.get((namespace, room), ()))

    # ---- delivery ----
    async def _deliver(self, targets: Dict[int, Connection], event: str, data: Dict[str, Any]) -> int:
        message = {"event": event, "data": data}
        delivered = 0
        for connection in list(targets.values()):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:  # a dead socket must not break the broadcast
                logger.warning(f"Dropping realtime connection after send failure: {e}")
                self.disconnect(connection)
        return delivered

    async def emit(self, namespace: str, room: str, event: str, data: Dict[str, Any]) -> int:
        return await self._deliver(self._rooms.get((namespace, room), {}), event, data)

    async def emit_to_user(self, namespace: str, user_id, event: str, data: Dict[str, Any]) -> int:
        return await self._deliver(self._users.get((namespace, str(user_id)), {}), event, data)

    # ---- domain events ----
    async def broadcast_exam_start(self, exam_id, started_at: datetime) -> int:
        logger.info("Broadcasting exam start for %s", exam_id)
        return await self.emit(EXAM_NAMESPACE, exam_room(exam_id), "exam:start",
                               {"exam_id": str(exam_id), "started_at": started_at.isoformat()})

    async def broadcast_exam_end(self, exam_id, ended_at: datetime) -> int:
        logger.info("Broadcasting exam end for %s", exam_id)
        return await self.emit(EXAM_NAMESPACE, exam_room(exam_id), "exam:end",
                               {"exam_id": str(exam_id), "ended_at": ended_at.isoformat()})

    async def emit_proctoring_alert(self, exam_id, payload: Dict[str, Any]) -> int:
        return await self.emit(PROCTORING_NAMESPACE, proctoring_room(exam_id), "proctoring:alert", payload)

    async def emit_proctoring_warning(self, student_id, payload: Dict[str, Any]) -> int:
        return await self.emit_to_user(PROCTORING_NAMESPACE, student_id, "proctoring:warning", payload)

    async def close(self) -> None:
        self._rooms.clear()
        self._users.clear()
        self._memberships.clear()
        self._identities.clear()
