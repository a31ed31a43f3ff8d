"""
Conversation repository.

Line bot settings, scoped FAQ entries and the staff directory used
for secretary handoff.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, or_, select

from clinicbot.core.conversation.faq import FAQEntry
from clinicbot.infra.database import get_db_context
from clinicbot.models.database import BotFAQ, ChannelLine, OrgMember

logger = logging.getLogger(__name__)


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass
class LineSettings:
    """Per-line bot configuration."""

    line_id: str
    organization_id: Optional[str]
    bot_greeting: Optional[str]
    default_duration_minutes: Optional[int]


@dataclass
class StaffContact:
    id: str
    role: str
    email: Optional[str] = None
    phone: Optional[str] = None


class ConversationRepository:
    """Data access for the conversation state machine."""

    async def get_line_settings(self, line_id: str) -> Optional[LineSettings]:
        async with get_db_context() as db:
            line = await db.get(ChannelLine, _uuid(line_id))
            if line is None:
                return None
            return LineSettings(
                line_id=str(line.id),
                organization_id=str(line.organization_id) if line.organization_id else None,
                bot_greeting=line.bot_greeting,
                default_duration_minutes=line.default_duration_minutes,
            )

    async def get_faqs(
        self,
        organization_id: str,
        clinic_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
    ) -> list[FAQEntry]:
        """
        Active FAQ entries visible from the given scope.

        Doctor scope sees doctor, clinic and organization entries; clinic
        scope sees clinic and organization entries; otherwise only
        organization-wide entries. Ordered by scope priority.
        """
        org_level = and_(BotFAQ.doctor_id.is_(None), BotFAQ.clinic_id.is_(None))
        clinic_level = and_(BotFAQ.clinic_id == _uuid(clinic_id), BotFAQ.doctor_id.is_(None))

        if doctor_id:
            scope = or_(BotFAQ.doctor_id == _uuid(doctor_id), clinic_level, org_level) \
                if clinic_id else or_(BotFAQ.doctor_id == _uuid(doctor_id), org_level)
        elif clinic_id:
            scope = or_(clinic_level, org_level)
        else:
            scope = org_level

        async with get_db_context() as db:
            result = await db.execute(
                select(BotFAQ)
                .where(
                    BotFAQ.organization_id == _uuid(organization_id),
                    BotFAQ.is_active.is_(True),
                    scope,
                )
                .order_by(BotFAQ.scope_priority, BotFAQ.display_order)
            )
            return [
                FAQEntry(
                    id=str(row.id),
                    question=row.question,
                    answer=row.answer,
                    keywords=list(row.keywords or []),
                    scope_priority=row.scope_priority,
                    display_order=row.display_order,
                )
                for row in result.scalars().all()
            ]

    async def find_active_secretary(self, organization_id: str) -> Optional[StaffContact]:
        async with get_db_context() as db:
            result = await db.execute(
                select(OrgMember)
                .where(
                    OrgMember.organization_id == _uuid(organization_id),
                    OrgMember.role == "secretary",
                    OrgMember.is_active.is_(True),
                )
                .order_by(OrgMember.created_at)
                .limit(1)
            )
            member = result.scalar_one_or_none()
            if member is None:
                return None
            return StaffContact(
                id=str(member.id),
                role=member.role,
                email=member.email,
                phone=member.phone,
            )


# Singleton
_repository: Optional[ConversationRepository] = None


def get_conversation_repository() -> ConversationRepository:
    """Get singleton ConversationRepository."""
    global _repository
    if _repository is None:
        _repository = ConversationRepository()
    return _repository
