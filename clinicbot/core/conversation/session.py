"""
Conversation Session Store.

One active session per (line, patient phone), stored in Redis with an
in-memory fallback when Redis is unavailable.

Keys (with namespace):
- clinicbot:v1:bot:session:{session_id} -> session JSON
- clinicbot:v1:bot:session:line:{line_id}:{phone} -> session_id

Key TTL is a retention limit only. Conversational expiry is the absolute
expires_at stamp, checked by the caller on every load.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from clinicbot.config import settings
from clinicbot.core.conversation.context import ConversationContext
from clinicbot.core.conversation.state import BotState
from clinicbot.infra.redis import APP_PREFIX, get_redis

logger = logging.getLogger(__name__)

SESSION_PREFIX = f"{APP_PREFIX}bot:session:"
POINTER_PREFIX = f"{APP_PREFIX}bot:session:line:"

RESTART_COMMANDS = frozenset({"0", "reiniciar", "restart", "inicio", "menu", "menú"})


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def is_restart_command(text: str) -> bool:
    return text.strip().lower() in RESTART_COMMANDS


@dataclass
class ConversationSession:
    """Conversation state for one patient on one line."""

    line_id: str
    patient_phone: str
    organization_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    state: BotState = BotState.GREETING
    context: ConversationContext = field(default_factory=ConversationContext)
    created_at: datetime = field(default_factory=_utcnow)
    last_message_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "line_id": self.line_id,
            "patient_phone": self.patient_phone,
            "organization_id": self.organization_id,
            "state": self.state.value,
            "context": self.context.to_dict(),
            "created_at": self.created_at.isoformat(),
            "last_message_at": self.last_message_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        })

    @classmethod
    def from_json(cls, json_str: str) -> "ConversationSession":
        """Create from JSON string."""
        data = json.loads(json_str)
        try:
            state = BotState(data.get("state", BotState.GREETING.value))
        except ValueError:
            logger.warning(f"Unknown stored state {data.get('state')!r}, restarting session")
            state = BotState.GREETING
        return cls(
            id=data["id"],
            line_id=data["line_id"],
            patient_phone=data["patient_phone"],
            organization_id=data.get("organization_id"),
            state=state,
            context=ConversationContext.from_dict(data.get("context")),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_message_at=datetime.fromisoformat(data["last_message_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


class SessionStore:
    """Redis-backed session storage with in-memory fallback."""

    def __init__(
        self,
        ttl_minutes: Optional[int] = None,
        retention_seconds: Optional[int] = None,
    ):
        self._ttl = timedelta(minutes=ttl_minutes or settings.session_ttl_minutes)
        self._retention = retention_seconds or settings.session_retention_seconds
        self._in_memory_fallback: dict[str, str] = {}
        self._in_memory_pointers: dict[str, str] = {}
        self._in_memory_deadlines: dict[str, datetime] = {}

    def _key(self, session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    def _pointer_key(self, line_id: str, phone: str) -> str:
        return f"{POINTER_PREFIX}{line_id}:{phone}"

    async def _write(self, session: ConversationSession) -> None:
        payload = session.to_json()
        pointer = self._pointer_key(session.line_id, session.patient_phone)
        redis = await get_redis()

        if redis:
            await redis.setex(self._key(session.id), self._retention, payload)
            await redis.setex(pointer, self._retention, session.id)
        else:
            self._prune_in_memory(session.last_message_at)
            self._in_memory_fallback[session.id] = payload
            self._in_memory_pointers[pointer] = session.id
            self._in_memory_deadlines[session.id] = (
                session.last_message_at + timedelta(seconds=self._retention)
            )
            logger.warning(
                f"Redis unavailable, using in-memory fallback for session {session.id}"
            )

    def _prune_in_memory(self, now: datetime) -> None:
        """Drop fallback sessions past the retention window, like Redis key TTLs."""
        stale = {sid for sid, deadline in self._in_memory_deadlines.items() if deadline <= now}
        if not stale:
            return
        for sid in stale:
            self._in_memory_fallback.pop(sid, None)
            self._in_memory_deadlines.pop(sid, None)
        self._in_memory_pointers = {
            key: sid for key, sid in self._in_memory_pointers.items() if sid not in stale
        }
        logger.debug(f"Pruned {len(stale)} in-memory sessions")

    async def _read(self, session_id: str) -> Optional[ConversationSession]:
        redis = await get_redis()

        if redis:
            data = await redis.get(self._key(session_id))
        else:
            data = self._in_memory_fallback.get(session_id)

        return ConversationSession.from_json(data) if data else None

    async def load(self, line_id: str, phone: str) -> Optional[ConversationSession]:
        """
        Get the session for a line and phone.

        Returns:
            The stored session (possibly expired) or None
        """
        pointer = self._pointer_key(line_id, phone)
        redis = await get_redis()

        if redis:
            session_id = await redis.get(pointer)
        else:
            session_id = self._in_memory_pointers.get(pointer)

        if not session_id:
            return None
        return await self._read(session_id)

    async def create(
        self,
        line_id: str,
        phone: str,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """
        Start a conversation for (line, phone).

        Upserts: an existing session for the pair keeps its id and is
        re-initialized.
        """
        now = now or _utcnow()
        existing = await self.load(line_id, phone)
        session = ConversationSession(
            line_id=line_id,
            patient_phone=phone,
            organization_id=organization_id,
            created_at=now,
            last_message_at=now,
            expires_at=now + self._ttl,
        )
        if existing is not None:
            session.id = existing.id
            session.organization_id = organization_id or existing.organization_id

        await self._write(session)
        logger.debug(f"Session created: {session.id}")
        return session

    async def reset(
        self,
        session: ConversationSession,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """Back to greeting with an empty context and a fresh expiry."""
        now = now or _utcnow()
        session.state = BotState.GREETING
        session.context = ConversationContext()
        session.last_message_at = now
        session.expires_at = now + self._ttl
        await self._write(session)
        logger.debug(f"Session reset: {session.id}")
        return session

    async def update(
        self,
        session_id: str,
        next_state: BotState,
        context: ConversationContext,
        complete: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[ConversationSession]:
        """
        Persist the outcome of a turn.

        A completed turn stores COMPLETED regardless of next_state.

        Returns:
            Updated session or None if it no longer exists
        """
        session = await self._read(session_id)
        if session is None:
            logger.warning(f"Session not found: {session_id}")
            return None

        session.state = BotState.COMPLETED if complete else next_state
        session.context = context
        session.last_message_at = now or _utcnow()
        await self._write(session)
        logger.debug(f"Session {session_id} -> {session.state.value}")
        return session


# Singleton
_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get singleton SessionStore."""
    global _store
    if _store is None:
        _store = SessionStore()
    return _store
