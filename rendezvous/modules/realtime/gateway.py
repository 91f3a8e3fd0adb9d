from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from rendezvous.core.auth import is_valid_user_id
from rendezvous.core.config import CALL_RING_TIMEOUT_SECONDS
from rendezvous.core.db import SessionLocal
from rendezvous.core.errors import PersistenceFailure, RendezvousError
from rendezvous.modules.conversations import service as conversations
from rendezvous.schemas.enums import CallType, MessageType
from .registry import Channel, InMemorySessionRegistry, SessionRegistry


def room_name(conversation_id: int) -> str:
    return f"conversation_{conversation_id}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_conversation_id(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("conversationId")
    if isinstance(value, bool):
        return None
    try:
        cid = int(value)
    except (TypeError, ValueError):
        return None
    return cid if cid > 0 else None


@dataclass(eq=False)
class CallSession:
    call_id: str
    caller_id: str
    target_id: str
    call_type: CallType
    created_at: float
    status: str = "ringing"  # ringing | active
    answered_at: Optional[float] = None

    def involves(self, user_id: str) -> bool:
        return user_id in (self.caller_id, self.target_id)

    def other_party(self, user_id: str) -> str:
        return self.target_id if user_id == self.caller_id else self.caller_id


class RealtimeGateway:
    """
    Live delivery on top of already-committed state.

    Nothing here is a system of record: messages are persisted through the
    conversation service before `relay_message`, and call signaling lives
    only in `self._calls`.
    """

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        ring_timeout: float = CALL_RING_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry if registry is not None else InMemorySessionRegistry()
        self.session_factory = session_factory
        self.ring_timeout = ring_timeout
        self.clock = clock
        self._calls: Dict[str, CallSession] = {}

        self._handlers = {
            "join_conversation": self._on_join_conversation,
            "leave_conversation": self._on_leave_conversation,
            "send_message": self.send_message,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "mark_read": self._on_mark_read,
            "call_request": self._on_call_request,
            "accept_call": self._on_accept_call,
            "reject_call": self._on_reject_call,
            "end_call": self._on_end_call,
            "cancel_call": self._on_cancel_call,
        }

    # ---------- plumbing ----------

    async def _run_db(self, fn: Callable, *args: Any) -> Any:
        def work():
            with self.session_factory() as db:
                return fn(db, *args)

        try:
            return await run_in_threadpool(work)
        except SQLAlchemyError as exc:
            logger.exception(f"[ws] storage error in {getattr(fn, '__name__', fn)}")
            raise PersistenceFailure() from exc

    async def _reply(self, channel: Channel, event: str, data: Dict[str, Any]) -> None:
        await self.registry.send(channel, event, data)

    # ---------- connection lifecycle ----------

    def connect(self, user_id: str, channel: Channel) -> None:
        self.registry.join(user_id, channel)
        logger.info(f"[ws] connected | user={user_id}")

    async def disconnect(self, user_id: str, channel: Channel) -> None:
        self.registry.leave(user_id, channel)
        logger.info(f"[ws] disconnected | user={user_id}")

        if self.registry.is_online(user_id):
            return
        # last device gone: tear down every call this user is part of
        for session in [s for s in self._calls.values() if s.involves(user_id)]:
            self._calls.pop(session.call_id, None)
            await self.registry.broadcast_to_user(
                session.other_party(user_id),
                "call_ended",
                {"callId": session.call_id, "endedBy": user_id, "reason": "disconnected", "timestamp": _timestamp()},
            )

    async def handle_event(self, user_id: str, channel: Channel, event: Any, data: Any) -> None:
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            await self._reply(channel, "error", {"error": f"Unknown event: {event}"})
            return
        try:
            await handler(user_id, channel, data if data is not None else {})
        except RendezvousError as exc:
            # handlers without their own error event (join, calls)
            await self._reply(channel, "error", {"event": event, "error": exc.message, "code": exc.code})

    # ---------- conversation rooms ----------

    async def join_conversation_room(self, user_id: str, conversation_id: Any, channel: Channel) -> bool:
        cid = _as_conversation_id(conversation_id)
        if cid is None:
            return False

        if not await self._run_db(conversations.is_member, cid, user_id):
            # silent: an error would confirm the conversation exists
            logger.debug(f"[ws] join refused | user={user_id} conversation={cid}")
            return False

        other = await self._run_db(conversations.get_other_participant, cid, user_id)
        if other and await self._run_db(conversations.is_blocked_between, user_id, other):
            await self._reply(channel, "join_error", {"conversationId": cid, "error": "Conversation is blocked"})
            return False

        self.registry.join_room(room_name(cid), channel)
        await self._reply(channel, "joined_conversation", {"conversationId": cid})
        logger.info(f"[ws] joined | user={user_id} conversation={cid}")
        return True

    def leave_conversation_room(self, conversation_id: Any, channel: Channel) -> None:
        cid = _as_conversation_id(conversation_id)
        if cid is not None:
            self.registry.leave_room(room_name(cid), channel)

    async def _on_join_conversation(self, user_id: str, channel: Channel, data: Any) -> None:
        await self.join_conversation_room(user_id, data, channel)

    async def _on_leave_conversation(self, user_id: str, channel: Channel, data: Any) -> None:
        self.leave_conversation_room(data, channel)

    # ---------- messages ----------

    async def send_message(self, user_id: str, channel: Channel, data: Any) -> Optional[Dict[str, Any]]:
        data = data if isinstance(data, dict) else {}
        cid = _as_conversation_id(data.get("conversationId"))
        content = data.get("content")
        message_type = data.get("type") or data.get("messageType") or MessageType.text.value
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None

        if cid is None or not isinstance(content, str) or not content:
            await self._reply(channel, "message_error", {"error": "Invalid message payload"})
            return None

        try:
            message = await self._run_db(
                conversations.send_message, cid, user_id, content, message_type, metadata
            )
        except RendezvousError as exc:
            await self._reply(channel, "message_error", {"error": exc.message, "code": exc.code})
            return None

        await self.relay_message(cid, message)
        return message

    async def relay_message(self, conversation_id: int, message: Dict[str, Any]) -> int:
        # persistence already committed; delivery is fire-and-forget
        return await self.registry.broadcast_to_room(room_name(conversation_id), "new_message", message)

    async def _typing(self, user_id: str, channel: Channel, data: Any, is_typing: bool) -> None:
        cid = _as_conversation_id(data)
        if cid is None or not self.registry.in_room(room_name(cid), channel):
            return
        await self.registry.broadcast_to_room(
            room_name(cid),
            "user_typing",
            {"userId": user_id, "conversationId": cid, "isTyping": is_typing},
            exclude=channel,
        )

    async def _on_typing_start(self, user_id: str, channel: Channel, data: Any) -> None:
        await self._typing(user_id, channel, data, True)

    async def _on_typing_stop(self, user_id: str, channel: Channel, data: Any) -> None:
        await self._typing(user_id, channel, data, False)

    async def _on_mark_read(self, user_id: str, channel: Channel, data: Any) -> None:
        cid = _as_conversation_id(data)
        if cid is None:
            return
        try:
            count = await self._run_db(conversations.mark_conversation_read, cid, user_id)
        except RendezvousError as exc:
            await self._reply(channel, "error", {"error": exc.message, "code": exc.code})
            return

        await self.registry.broadcast_to_room(
            room_name(cid),
            "message_read",
            {
                "userId": user_id,
                "conversationId": cid,
                "messageId": data.get("messageId") if isinstance(data, dict) else None,
                "count": count,
                "timestamp": _timestamp(),
            },
            exclude=channel,
        )

    # ---------- call signaling ----------

    def _expire_calls(self) -> None:
        cutoff = self.clock() - self.ring_timeout
        for call_id in [c.call_id for c in self._calls.values() if c.status == "ringing" and c.created_at < cutoff]:
            logger.info(f"[call] expired unanswered | call={call_id}")
            del self._calls[call_id]

    def get_call(self, call_id: Any) -> Optional[CallSession]:
        self._expire_calls()
        return self._calls.get(str(call_id)) if call_id is not None else None

    async def call_request(
        self,
        caller_id: str,
        channel: Channel,
        target_user_id: Any,
        call_type: Any,
        call_id: Any = None,
    ) -> Optional[CallSession]:
        if not is_valid_user_id(target_user_id) or target_user_id == caller_id:
            await self._reply(channel, "call_error", {"error": "Invalid call target"})
            return None
        try:
            ctype = CallType(call_type or CallType.audio.value)
        except ValueError:
            await self._reply(channel, "call_error", {"error": f"Unsupported call type: {call_type}"})
            return None

        if await self._run_db(conversations.is_blocked_between, caller_id, target_user_id):
            await self._reply(channel, "call_error", {"error": "Cannot call this user"})
            return None

        self._expire_calls()
        call_id = str(call_id) if call_id else uuid.uuid4().hex
        if call_id in self._calls:
            await self._reply(channel, "call_error", {"callId": call_id, "error": "Duplicate call id"})
            return None

        session = CallSession(
            call_id=call_id,
            caller_id=caller_id,
            target_id=target_user_id,
            call_type=ctype,
            created_at=self.clock(),
        )
        self._calls[call_id] = session

        delivered = await self.registry.broadcast_to_user(
            target_user_id,
            "incoming_call",
            {
                "id": call_id,
                "callId": call_id,
                "callerId": caller_id,
                "type": ctype.value,
                "timestamp": _timestamp(),
            },
        )
        await self._reply(channel, "call_ringing", {"callId": call_id, "targetUserId": target_user_id, "delivered": delivered})
        logger.info(f"[call] request | call={call_id} from={caller_id} to={target_user_id} delivered={delivered}")
        return session

    async def accept_call(self, callee_id: str, channel: Channel, call_id: Any, caller_id: Any = None) -> bool:
        session = self.get_call(call_id)
        if (
            session is None
            or session.status != "ringing"
            or session.target_id != callee_id
            or (caller_id and session.caller_id != caller_id)
        ):
            await self._reply(channel, "call_error", {"callId": call_id, "error": "Call not found or expired"})
            return False

        session.status = "active"
        session.answered_at = self.clock()
        await self.registry.broadcast_to_user(
            session.caller_id,
            "call_accepted",
            {"callId": session.call_id, "targetUserId": callee_id, "timestamp": _timestamp()},
        )
        logger.info(f"[call] accepted | call={session.call_id}")
        return True

    async def reject_call(self, callee_id: str, channel: Channel, call_id: Any) -> bool:
        session = self.get_call(call_id)
        if session is None or session.status != "ringing" or session.target_id != callee_id:
            await self._reply(channel, "call_error", {"callId": call_id, "error": "Call not found or expired"})
            return False

        del self._calls[session.call_id]
        await self.registry.broadcast_to_user(
            session.caller_id,
            "call_rejected",
            {"callId": session.call_id, "targetUserId": callee_id, "timestamp": _timestamp()},
        )
        return True

    async def end_call(self, user_id: str, channel: Channel, call_id: Any) -> bool:
        session = self.get_call(call_id)
        if session is None or not session.involves(user_id):
            await self._reply(channel, "call_error", {"callId": call_id, "error": "Call not found"})
            return False

        del self._calls[session.call_id]
        await self.registry.broadcast_to_user(
            session.other_party(user_id),
            "call_ended",
            {"callId": session.call_id, "endedBy": user_id, "timestamp": _timestamp()},
        )
        return True

    async def cancel_call(self, caller_id: str, channel: Channel, call_id: Any) -> bool:
        session = self.get_call(call_id)
        if session is None or session.status != "ringing" or session.caller_id != caller_id:
            await self._reply(channel, "call_error", {"callId": call_id, "error": "Call not found or expired"})
            return False

        del self._calls[session.call_id]
        await self.registry.broadcast_to_user(
            session.target_id,
            "call_cancelled",
            {"callId": session.call_id, "callerId": caller_id, "timestamp": _timestamp()},
        )
        return True

    async def _on_call_request(self, user_id: str, channel: Channel, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        await self.call_request(
            user_id,
            channel,
            data.get("targetUserId"),
            data.get("callType") or data.get("type"),
            data.get("id") or data.get("callId"),
        )

    async def _on_accept_call(self, user_id: str, channel: Channel, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        await self.accept_call(user_id, channel, data.get("callId"), data.get("targetUserId"))

    async def _on_reject_call(self, user_id: str, channel: Channel, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        await self.reject_call(user_id, channel, data.get("callId"))

    async def _on_end_call(self, user_id: str, channel: Channel, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        await self.end_call(user_id, channel, data.get("callId"))

    async def _on_cancel_call(self, user_id: str, channel: Channel, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        await self.cancel_call(user_id, channel, data.get("callId"))


gateway = RealtimeGateway()


def get_gateway() -> RealtimeGateway:
    return gateway
