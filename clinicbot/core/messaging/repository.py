"""
Messaging repository.

Lines, template mappings, the organization kill switch and the
append-only message log.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import case, desc, select, update
from sqlalchemy.exc import IntegrityError

from clinicbot.core.messaging.phone import normalize_to_e164
from clinicbot.core.messaging.types import (
    STATUS_RANK,
    LineConfig,
    MessageLogEntry,
    TemplateMappingInfo,
    status_rank,
)
from clinicbot.infra.database import get_db_context
from clinicbot.models.database import (
    ChannelLine,
    MessageLog,
    Organization,
    TemplateMapping,
)

logger = logging.getLogger(__name__)

PENDING_TEMPLATE_STATUS = "PENDING"
UNUSABLE_TEMPLATE_STATUSES = ("PENDING", "REJECTED")


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _line_config(row: ChannelLine) -> LineConfig:
    return LineConfig(
        id=str(row.id),
        phone_number=row.phone_number,
        provider=row.provider,
        organization_id=str(row.organization_id) if row.organization_id else None,
        is_active=row.is_active,
        bot_enabled=row.bot_enabled,
        twilio_account_sid=row.twilio_account_sid,
        twilio_auth_token=row.twilio_auth_token,
        twilio_phone_from=row.twilio_phone_from,
        twilio_messaging_service_sid=row.twilio_messaging_service_sid,
        meta_waba_id=row.meta_waba_id,
        meta_phone_number_id=row.meta_phone_number_id,
        meta_access_token=row.meta_access_token,
    )


def _rank_expression():
    """SQL CASE mirroring STATUS_RANK."""
    return case(
        *[(MessageLog.status == status, rank) for status, rank in STATUS_RANK.items()],
        else_=0,
    )


class MessagingRepository:
    """Data access for the gateway and the webhook processor."""

    # === Lines ===

    async def get_line(self, line_id: str) -> Optional[LineConfig]:
        async with get_db_context() as db:
            row = await db.get(ChannelLine, _uuid(line_id))
            return _line_config(row) if row else None

    async def get_active_line(self, organization_id: Optional[str] = None) -> Optional[LineConfig]:
        """Newest active line, scoped to the organization when given."""
        async with get_db_context() as db:
            query = select(ChannelLine).where(ChannelLine.is_active.is_(True))
            if organization_id:
                query = query.where(ChannelLine.organization_id == _uuid(organization_id))
            query = query.order_by(desc(ChannelLine.created_at)).limit(1)
            row = (await db.execute(query)).scalars().first()
            return _line_config(row) if row else None

    async def get_line_by_phone_number_id(self, phone_number_id: str) -> Optional[LineConfig]:
        """Meta lines are keyed by their Graph phone_number_id."""
        async with get_db_context() as db:
            query = (
                select(ChannelLine)
                .where(
                    ChannelLine.meta_phone_number_id == phone_number_id,
                    ChannelLine.is_active.is_(True),
                )
                .limit(1)
            )
            row = (await db.execute(query)).scalars().first()
            return _line_config(row) if row else None

    async def get_line_by_phone(self, phone: str) -> Optional[LineConfig]:
        """Twilio lines are keyed by their WhatsApp number."""
        e164 = normalize_to_e164(phone)
        candidates = {e164, e164.lstrip("+"), f"whatsapp:{e164}"}
        async with get_db_context() as db:
            query = (
                select(ChannelLine)
                .where(
                    ChannelLine.is_active.is_(True),
                    (ChannelLine.phone_number.in_(candidates))
                    | (ChannelLine.twilio_phone_from.in_(candidates)),
                )
                .limit(1)
            )
            row = (await db.execute(query)).scalars().first()
            return _line_config(row) if row else None

    # === Organization ===

    async def is_messaging_enabled(self, organization_id: Optional[str]) -> bool:
        """Kill switch. Unknown organizations are treated as enabled."""
        if not organization_id:
            return True
        async with get_db_context() as db:
            query = select(Organization.messaging_enabled).where(
                Organization.id == _uuid(organization_id)
            )
            enabled = (await db.execute(query)).scalar_one_or_none()
            return enabled is not False

    # === Templates ===

    async def get_template_mapping(
        self,
        line_id: str,
        logical_type: str,
        provider: str,
    ) -> Optional[TemplateMappingInfo]:
        """Active, usable mapping for (line, type, provider)."""
        async with get_db_context() as db:
            query = (
                select(TemplateMapping)
                .where(
                    TemplateMapping.whatsapp_line_id == _uuid(line_id),
                    TemplateMapping.logical_type == logical_type,
                    TemplateMapping.provider == provider,
                    TemplateMapping.is_active.is_(True),
                    (TemplateMapping.meta_status.is_(None))
                    | (TemplateMapping.meta_status.notin_(UNUSABLE_TEMPLATE_STATUSES)),
                )
                .order_by(desc(TemplateMapping.created_at))
                .limit(1)
            )
            row = (await db.execute(query)).scalars().first()
            if row is None:
                return None
            return TemplateMappingInfo(
                template_name=row.template_name,
                template_language=row.template_language or "es",
                meta_status=row.meta_status,
            )

    async def has_pending_template(self, line_id: str, logical_type: str, provider: str) -> bool:
        async with get_db_context() as db:
            query = (
                select(TemplateMapping.id)
                .where(
                    TemplateMapping.whatsapp_line_id == _uuid(line_id),
                    TemplateMapping.logical_type == logical_type,
                    TemplateMapping.provider == provider,
                    TemplateMapping.meta_status == PENDING_TEMPLATE_STATUS,
                )
                .limit(1)
            )
            return (await db.execute(query)).first() is not None

    # === Message log ===

    async def log_message(self, entry: MessageLogEntry) -> Optional[str]:
        """Append one log row.

        A duplicate provider_message_id means the message was already
        recorded; that insert is skipped and None is returned.
        """
        try:
            async with get_db_context() as db:
                row = MessageLog(
                    direction=entry.direction,
                    to_phone=entry.to_phone,
                    from_phone=entry.from_phone,
                    body=entry.body,
                    template_name=entry.template_name,
                    type=entry.type,
                    status=entry.status,
                    provider=entry.provider,
                    provider_message_id=entry.provider_message_id,
                    error_code=entry.error_code,
                    error_message=entry.error_message,
                    appointment_id=_uuid(entry.appointment_id),
                    patient_id=_uuid(entry.patient_id),
                    doctor_id=_uuid(entry.doctor_id),
                    organization_id=_uuid(entry.organization_id),
                    whatsapp_line_id=_uuid(entry.line_id),
                    raw_payload=entry.raw_payload,
                )
                db.add(row)
                await db.flush()
                return str(row.id)
        except IntegrityError:
            logger.info(f"Message {entry.provider_message_id} already logged")
            return None

    async def message_exists(self, provider_message_id: str) -> bool:
        async with get_db_context() as db:
            query = (
                select(MessageLog.id)
                .where(MessageLog.provider_message_id == provider_message_id)
                .limit(1)
            )
            return (await db.execute(query)).first() is not None

    async def get_message_status(self, provider_message_id: str) -> Optional[str]:
        async with get_db_context() as db:
            query = (
                select(MessageLog.status)
                .where(MessageLog.provider_message_id == provider_message_id)
                .limit(1)
            )
            return (await db.execute(query)).scalar_one_or_none()

    async def update_message_status(
        self,
        provider_message_id: str,
        status: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Apply a delivery status unless it would regress the row.

        Returns:
            True if a row was updated
        """
        values: dict = {"status": status}
        if error_code is not None:
            values["error_code"] = error_code
        if error_message is not None:
            values["error_message"] = error_message

        async with get_db_context() as db:
            stmt = (
                update(MessageLog)
                .where(
                    MessageLog.provider_message_id == provider_message_id,
                    _rank_expression() <= status_rank(status),
                )
                .values(**values)
            )
            result = await db.execute(stmt)
            return result.rowcount > 0


# Singleton
_repository: Optional[MessagingRepository] = None


def get_messaging_repository() -> MessagingRepository:
    global _repository
    if _repository is None:
        _repository = MessagingRepository()
    return _repository
