"""Tests for the conversation session store."""

import pytest
from unittest.mock import AsyncMock, patch
from datetime import datetime, timedelta, timezone

from clinicbot.core.conversation.context import BookingContext, ConversationContext
from clinicbot.core.conversation.session import (
    ConversationSession,
    SessionStore,
    is_restart_command,
)
from clinicbot.core.conversation.state import BotState


NOW = datetime(2025, 10, 14, 15, 0, tzinfo=timezone.utc)


class TestSessionStore:
    """Test Redis session storage."""

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client backed by a dict."""
        data: dict[str, str] = {}
        mock = AsyncMock()

        async def setex(key, ttl, value):
            data[key] = value

        async def get(key):
            return data.get(key)

        mock.setex = AsyncMock(side_effect=setex)
        mock.get = AsyncMock(side_effect=get)
        mock.data = data
        return mock

    @pytest.fixture
    def store(self):
        return SessionStore(ttl_minutes=45, retention_seconds=86400)

    @pytest.mark.asyncio
    async def test_create_writes_session_and_pointer(self, store, mock_redis):
        """Session JSON and the (line, phone) pointer are both written."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            session = await store.create("line-1", "+50499999999", "org-1", now=NOW)

            assert session.state == BotState.GREETING
            assert session.expires_at == NOW + timedelta(minutes=45)
            assert mock_redis.setex.call_count == 2
            keys = {c.args[0] for c in mock_redis.setex.call_args_list}
            assert f"clinicbot:v1:bot:session:{session.id}" in keys
            assert "clinicbot:v1:bot:session:line:line-1:+50499999999" in keys
            assert all(c.args[1] == 86400 for c in mock_redis.setex.call_args_list)

    @pytest.mark.asyncio
    async def test_load_roundtrip(self, store, mock_redis):
        """A created session is loaded back by line and phone."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            created = await store.create("line-1", "+50499999999", "org-1", now=NOW)
            loaded = await store.load("line-1", "+50499999999")

            assert loaded is not None
            assert loaded.id == created.id
            assert loaded.organization_id == "org-1"

    @pytest.mark.asyncio
    async def test_load_missing(self, store, mock_redis):
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            assert await store.load("line-1", "+50400000000") is None

    @pytest.mark.asyncio
    async def test_create_is_upsert(self, store, mock_redis):
        """A second create for the same pair keeps the session id."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            first = await store.create("line-1", "+50499999999", "org-1", now=NOW)
            second = await store.create("line-1", "+50499999999", None, now=NOW)

            assert second.id == first.id
            assert second.organization_id == "org-1"

    @pytest.mark.asyncio
    async def test_update_persists_state_and_context(self, store, mock_redis):
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            session = await store.create("line-1", "+50499999999", now=NOW)
            context = ConversationContext(flow=BookingContext(doctor_id="doc-1"))

            await store.update(session.id, BotState.BOOKING_SELECT_WEEK, context, now=NOW)
            loaded = await store.load("line-1", "+50499999999")

            assert loaded.state == BotState.BOOKING_SELECT_WEEK
            assert isinstance(loaded.context.flow, BookingContext)
            assert loaded.context.flow.doctor_id == "doc-1"

    @pytest.mark.asyncio
    async def test_update_complete_stores_completed(self, store, mock_redis):
        """A completed turn is stored as COMPLETED whatever next_state says."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            session = await store.create("line-1", "+50499999999", now=NOW)

            updated = await store.update(
                session.id, BotState.HANDOFF_SECRETARY, ConversationContext(),
                complete=True, now=NOW,
            )

            assert updated.state == BotState.COMPLETED

    @pytest.mark.asyncio
    async def test_update_missing_session(self, store, mock_redis):
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            result = await store.update("nope", BotState.MAIN_MENU, ConversationContext())
            assert result is None

    @pytest.mark.asyncio
    async def test_reset_clears_context(self, store, mock_redis):
        """Reset returns to greeting with an empty context and fresh expiry."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=mock_redis,
        ):
            session = await store.create("line-1", "+50499999999", now=NOW)
            session.state = BotState.BOOKING_SELECT_DAY
            session.context = ConversationContext(flow=BookingContext(doctor_id="doc-1"))
            later = NOW + timedelta(hours=2)

            reset = await store.reset(session, now=later)

            assert reset.id == session.id
            assert reset.state == BotState.GREETING
            assert reset.context.flow.kind == "menu"
            assert reset.expires_at == later + timedelta(minutes=45)

    @pytest.mark.asyncio
    async def test_fallback_when_redis_unavailable(self, store):
        """Test session storage with Redis unavailable."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=None,
        ):
            session = await store.create("line-1", "+50499999999", now=NOW)
            loaded = await store.load("line-1", "+50499999999")

            # Check in-memory fallback
            assert session.id in store._in_memory_fallback
            assert loaded.id == session.id

    @pytest.mark.asyncio
    async def test_fallback_prunes_past_retention(self, store):
        """In-memory sessions are dropped once the retention window passes."""
        with patch(
            "clinicbot.core.conversation.session.get_redis",
            return_value=None,
        ):
            old = await store.create("line-1", "+50411111111", now=NOW)
            recent = await store.create("line-1", "+50422222222", now=NOW + timedelta(hours=12))

            await store.create("line-1", "+50433333333", now=NOW + timedelta(days=1, minutes=1))

            assert old.id not in store._in_memory_fallback
            assert await store.load("line-1", "+50411111111") is None
            assert recent.id in store._in_memory_fallback
            assert (await store.load("line-1", "+50422222222")).id == recent.id


class TestConversationSession:
    """Test session serialization and expiry."""

    def test_is_expired(self):
        session = ConversationSession(
            line_id="line-1",
            patient_phone="+50499999999",
            expires_at=NOW,
        )
        assert not session.is_expired(NOW)
        assert session.is_expired(NOW + timedelta(seconds=1))

    def test_unknown_state_restarts(self):
        """A stored state this version does not know falls back to greeting."""
        session = ConversationSession(line_id="line-1", patient_phone="+50499999999")
        data = session.to_json().replace('"state": "greeting"', '"state": "legacy_state"')

        restored = ConversationSession.from_json(data)

        assert restored.state == BotState.GREETING

    @pytest.mark.parametrize("text", ["0", "menu", "Menú", " REINICIAR ", "inicio"])
    def test_restart_commands(self, text):
        assert is_restart_command(text)

    @pytest.mark.parametrize("text", ["1", "hola", ""])
    def test_not_restart_commands(self, text):
        assert not is_restart_command(text)
