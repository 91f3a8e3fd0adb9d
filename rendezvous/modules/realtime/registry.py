from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Optional, Protocol, Set

from fastapi.encoders import jsonable_encoder
from loguru import logger


class Channel(Protocol):
    """Anything that can push a JSON frame to one live client (a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


def envelope(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": data}


class SessionRegistry(Protocol):
    """
    Who is connected and which rooms their channels sit in.

    The gateway only talks to this interface, so a pub/sub backed registry
    for multi-process fan-out can replace the in-memory one.
    """

    def join(self, user_id: str, channel: Channel) -> None: ...

    def leave(self, user_id: str, channel: Channel) -> None: ...

    def join_room(self, room: str, channel: Channel) -> None: ...

    def leave_room(self, room: str, channel: Channel) -> None: ...

    def channels_for(self, user_id: str) -> Set[Channel]: ...

    def in_room(self, room: str, channel: Channel) -> bool: ...

    def is_online(self, user_id: str) -> bool: ...

    async def broadcast_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int: ...

    async def broadcast_to_room(
        self,
        room: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Channel] = None,
    ) -> int: ...

    async def send(self, channel: Channel, event: str, data: Dict[str, Any]) -> bool: ...


class InMemorySessionRegistry:
    """Process-local registry; no cross-process fan-out."""

    def __init__(self) -> None:
        self._users: Dict[str, Set[Channel]] = defaultdict(set)
        self._rooms: Dict[str, Set[Channel]] = defaultdict(set)

    # ---------- membership ----------

    def join(self, user_id: str, channel: Channel) -> None:
        self._users[user_id].add(channel)

    def leave(self, user_id: str, channel: Channel) -> None:
        channels = self._users.get(user_id)
        if channels is not None:
            channels.discard(channel)
            if not channels:
                del self._users[user_id]

        for room in [r for r, members in self._rooms.items() if channel in members]:
            self.leave_room(room, channel)

    def join_room(self, room: str, channel: Channel) -> None:
        self._rooms[room].add(channel)

    def leave_room(self, room: str, channel: Channel) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(channel)
        if not members:
            del self._rooms[room]

    def channels_for(self, user_id: str) -> Set[Channel]:
        return set(self._users.get(user_id, ()))

    def room_members(self, room: str) -> Set[Channel]:
        return set(self._rooms.get(room, ()))

    def in_room(self, room: str, channel: Channel) -> bool:
        return channel in self._rooms.get(room, ())

    def is_online(self, user_id: str) -> bool:
        return bool(self._users.get(user_id))

    # ---------- delivery ----------

    async def send(self, channel: Channel, event: str, data: Dict[str, Any]) -> bool:
        try:
            await channel.send_json(jsonable_encoder(envelope(event, data)))
            return True
        except Exception as exc:
            # dead socket; disconnect handling will drop it
            logger.warning(f"[ws] send failed | event={event} err={exc!r}")
            return False

    async def broadcast_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        delivered = 0
        for channel in self.channels_for(user_id):
            if await self.send(channel, event, data):
                delivered += 1
        return delivered

    async def broadcast_to_room(
        self,
        room: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Channel] = None,
    ) -> int:
        delivered = 0
        for channel in self.room_members(room):
            if channel is exclude:
                continue
            if await self.send(channel, event, data):
                delivered += 1
        return delivered
