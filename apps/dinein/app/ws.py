import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket

_log = logging.getLogger("dinein.ws")

GLOBAL_TOPIC = "global"


def branch_room(branch_id: str) -> str:
    return f"branch-{branch_id}"


def session_room(session_id: str) -> str:
    return f"session-{session_id}"


def order_room(order_id: str) -> str:
    return f"order-{order_id}"


# client event -> (action, room factory)
ROOM_EVENTS = {
    "joinBranchRoom": ("join", branch_room),
    "leaveBranchRoom": ("leave", branch_room),
    "joinSessionRoom": ("join", session_room),
    "leaveSessionRoom": ("leave", session_room),
    "joinOrderRoom": ("join", order_room),
    "leaveOrderRoom": ("leave", order_room),
}


class Notifier(Protocol):
    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class NullNotifier:
    """Drops every notification; for scripts and jobs with no listeners."""

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        _log.debug("notification dropped", extra={"topic": topic, "event": event})


class RoomHub:
    """
    In-process fan-out of JSON frames to connected WebSocket clients.

    Every connection receives `global` publications; other topics only reach
    sockets that joined the room. Room membership lives until the client
    leaves or disconnects, independent of the entity behind the room.

    publish() is safe to call from threadpool workers (sync route handlers):
    sends are scheduled onto the loop the sockets live on.
    """

    def __init__(self) -> None:
        self._sockets: Set[WebSocket] = set()
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.bind_loop()
        with self._lock:
            self._sockets.add(ws)
        _log.info("ws connected", extra={"connections": len(self._sockets)})

    def disconnect(self, ws: WebSocket) -> None:
        with self._lock:
            self._sockets.discard(ws)
            for room, members in list(self._rooms.items()):
                members.discard(ws)
                if not members:
                    del self._rooms[room]

    def subscribe(self, ws: WebSocket, topic: str) -> None:
        with self._lock:
            self._rooms.setdefault(topic, set()).add(ws)

    def unsubscribe(self, ws: WebSocket, topic: str) -> None:
        with self._lock:
            members = self._rooms.get(topic)
            if members is None:
                return
            members.discard(ws)
            if not members:
                del self._rooms[topic]

    def room_size(self, topic: str) -> int:
        with self._lock:
            if topic == GLOBAL_TOPIC:
                return len(self._sockets)
            return len(self._rooms.get(topic, ()))

    async def handle_client_message(self, ws: WebSocket, msg: Any) -> None:
        if not isinstance(msg, dict):
            await ws.send_json({"event": "error", "data": {"message": "expected a JSON object"}})
            return
        event = msg.get("event")
        entity_id = msg.get("data")
        spec = ROOM_EVENTS.get(event) if isinstance(event, str) else None
        if spec is None or not isinstance(entity_id, str) or not entity_id:
            await ws.send_json({"event": "error", "data": {"message": f"unsupported event {event!r}"}})
            return
        action, room_for = spec
        room = room_for(entity_id)
        if action == "join":
            self.subscribe(ws, room)
        else:
            self.unsubscribe(ws, room)
        await ws.send_json({"event": event, "data": {"success": True, "room": room}})

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            if topic == GLOBAL_TOPIC:
                targets = list(self._sockets)
            else:
                targets = list(self._rooms.get(topic, ()))
        if not targets:
            return
        self._schedule(self._send(targets, {"event": event, "data": payload}))

    async def _send(self, targets, msg: Dict[str, Any]) -> None:
        for ws in targets:
            try:
                await ws.send_json(msg)
            except Exception:
                _log.info("dropping dead socket", extra={"event": msg.get("event")})
                self.disconnect(ws)

    def _schedule(self, coro) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            running.create_task(coro)
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            _log.debug("no event loop bound; notification dropped")
            return
        asyncio.run_coroutine_threadsafe(coro, loop)


hub = RoomHub()


def get_notifier() -> Notifier:
    return hub
