"""
Real-time fan-out over websockets.

PresenceHub tracks which sockets belong to which user, the per-user
personal channel ("user_<wa_id>") and the conversation rooms clients have
joined. One instance is created by the application lifespan and passed to
whatever needs to broadcast.

Every event goes out as {"event": <name>, "data": <payload>}.
"""

import logging
from typing import Any, Callable, Dict, Iterable, Optional, Set

from fastapi import WebSocket
from starlette.concurrency import run_in_threadpool

from wachat import user_store
from wachat.errors import Forbidden, ValidationError
from wachat.identity import is_participant
from wachat.metrics import record_realtime_event
from wachat.utils import isoformat_z, utcnow

logger = logging.getLogger(__name__)

PRESENCE_STATUSES = ("online", "away", "busy")


def personal_channel(wa_id: str) -> str:
    return f"user_{wa_id}"


class PresenceHub:
    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.users: Dict[WebSocket, str] = {}
        self.names: Dict[WebSocket, str] = {}

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def _add(self, room: str, ws: WebSocket) -> None:
        self.rooms.setdefault(room, set()).add(ws)

    def _discard(self, room: str, ws: WebSocket) -> None:
        if room in self.rooms:
            self.rooms[room].discard(ws)
            if not self.rooms[room]:
                self.rooms.pop(room, None)

    def sessions_for(self, wa_id: str) -> Set[WebSocket]:
        return set(self.rooms.get(personal_channel(wa_id), set()))

    def is_online(self, wa_id: str) -> bool:
        return bool(self.rooms.get(personal_channel(wa_id)))

    def members(self, room: str) -> Set[str]:
        return {self.users[ws] for ws in self.rooms.get(room, set()) if ws in self.users}

    async def connect(self, ws: WebSocket, wa_id: str, name: Optional[str] = None) -> None:
        """Accept a socket, join its personal channel and announce the user online."""
        await ws.accept()
        first_session = not self.is_online(wa_id)
        self.users[ws] = wa_id
        self.names[ws] = name or wa_id
        self._add(personal_channel(wa_id), ws)
        logger.info(f"User connected: {wa_id}")

        if first_session:
            await self._set_presence(wa_id, True, exclude=ws)

    async def disconnect(self, ws: WebSocket) -> None:
        """Drop a socket from every room; the last session going away marks the user offline."""
        wa_id = self.users.pop(ws, None)
        self.names.pop(ws, None)
        for room in list(self.rooms):
            self._discard(room, ws)
        if wa_id is None:
            return
        logger.info(f"User disconnected: {wa_id}")
        if not self.is_online(wa_id):
            await self._set_presence(wa_id, False)

    def join(self, ws: WebSocket, conversation_id: str) -> None:
        wa_id = self.users.get(ws)
        if wa_id is None:
            raise ValidationError("Socket is not connected")
        if not is_participant(conversation_id, wa_id):
            raise Forbidden("Access denied to this conversation")
        self._add(conversation_id, ws)
        logger.debug(f"User {wa_id} joined conversation: {conversation_id}")

    def leave(self, ws: WebSocket, conversation_id: str) -> None:
        self._discard(conversation_id, ws)
        logger.debug(f"User {self.users.get(ws)} left conversation: {conversation_id}")

    # -------------------------------------------------------------------------
    # Broadcast primitives
    # -------------------------------------------------------------------------

    async def _send(self, targets: Iterable[WebSocket], event: str, payload: Dict[str, Any]) -> int:
        message = {"event": event, "data": payload}
        delivered = 0
        for ws in list(targets):
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as e:
                # A socket that fails to send is gone; stop fanning out to it
                logger.warning(f"Dropping socket for {self.users.get(ws)} after send failure: {e}")
                await self.disconnect(ws)
        record_realtime_event(event)
        return delivered

    async def to_conversation(
        self,
        conversation_id: str,
        event: str,
        payload: Dict[str, Any],
        exclude: Optional[WebSocket] = None,
    ) -> int:
        targets = [ws for ws in self.rooms.get(conversation_id, set()) if ws is not exclude]
        return await self._send(targets, event, payload)

    async def to_user(self, wa_id: str, event: str, payload: Dict[str, Any]) -> int:
        return await self._send(self.rooms.get(personal_channel(wa_id), set()), event, payload)

    async def to_all(self, event: str, payload: Dict[str, Any], exclude: Optional[WebSocket] = None) -> int:
        targets = [ws for ws in self.users if ws is not exclude]
        return await self._send(targets, event, payload)

    # -------------------------------------------------------------------------
    # Client-originated signals
    # -------------------------------------------------------------------------

    async def typing(self, ws: WebSocket, conversation_id: str, started: bool) -> None:
        """Relay a typing start/stop to the rest of the room. Nothing is stored."""
        wa_id = self.users.get(ws)
        if wa_id is None or not is_participant(conversation_id, wa_id):
            raise Forbidden("Access denied to this conversation")
        payload = {
            "userId": wa_id,
            "userName": self.names.get(ws, wa_id),
            "wa_id": wa_id,
            "conversationId": conversation_id,
        }
        event = "user_typing" if started else "user_stop_typing"
        await self.to_conversation(conversation_id, event, payload, exclude=ws)

    async def update_presence(self, ws: WebSocket, status: str) -> None:
        if status not in PRESENCE_STATUSES:
            raise ValidationError(f"Invalid presence status: {status}")
        wa_id = self.users.get(ws)
        if wa_id is None:
            raise ValidationError("Socket is not connected")
        await self._set_presence(wa_id, status == "online", exclude=ws)

    async def _set_presence(self, wa_id: str, is_online: bool, exclude: Optional[WebSocket] = None) -> None:
        at = utcnow()
        if self._session_factory is not None:
            try:
                await run_in_threadpool(self._persist_presence, wa_id, is_online, at)
            except Exception as e:
                logger.error(f"Failed to persist presence for {wa_id}: {e}")
        await self.to_all(
            "user_presence_update",
            {
                "userId": wa_id,
                "wa_id": wa_id,
                "isOnline": is_online,
                "lastSeen": isoformat_z(at),
            },
            exclude=exclude,
        )

    def _persist_presence(self, wa_id: str, is_online: bool, at) -> None:
        with self._session_factory() as db:
            user_store.set_presence(db, wa_id, is_online, at)

    async def close(self) -> None:
        """Close every socket. Called on application shutdown."""
        sockets = list(self.users)
        for ws in sockets:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing socket: {e}")
        self.rooms.clear()
        self.users.clear()
        self.names.clear()
        logger.info(f"Presence hub closed {len(sockets)} sockets")
