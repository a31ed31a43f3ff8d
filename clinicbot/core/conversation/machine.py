"""
Conversation State Machine.

Computes one bot turn: (state, context, input) -> (response, next state,
context). State is persisted only through the session store; the
machine itself holds no per-conversation data between calls.

Usage:
    machine = get_state_machine()
    response = await machine.handle_message(line_id, "+50499999999", "1", org_id)
    print(response.render())
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from clinicbot.config import settings
from clinicbot.core.conversation import messages as msg
from clinicbot.core.conversation.context import (
    BookingContext,
    ConversationContext,
    FAQContext,
    MenuContext,
    RescheduleContext,
)
from clinicbot.core.conversation.faq import match_faq
from clinicbot.core.conversation.repository import (
    ConversationRepository,
    get_conversation_repository,
)
from clinicbot.core.conversation.session import (
    ConversationSession,
    SessionStore,
    get_session_store,
    is_restart_command,
)
from clinicbot.core.conversation.state import (
    BotResponse,
    BotState,
    CancelPhase,
    resolve_option,
)
from clinicbot.core.messaging.phone import mask_phone, normalize_to_e164, to_local
from clinicbot.core.scheduling.booking import BookingService, get_booking_service
from clinicbot.core.scheduling.repository import (
    SchedulingRepository,
    get_scheduling_repository,
)
from clinicbot.core.scheduling.slots import (
    SlotEngine,
    filter_future_slots,
    get_slot_engine,
)
from clinicbot.core.scheduling.timeutils import (
    format_appointment_datetime,
    format_day_label,
    format_time_12h,
    format_week_label,
    minutes_to_hhmm,
    tenant_now,
    to_minutes,
    week_monday,
)

logger = logging.getLogger(__name__)

YES_WORDS = frozenset({"si", "sí", "s", "yes"})
NO_WORDS = frozenset({"no", "n"})


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class Turn:
    """Everything a handler needs for one inbound message."""

    session: ConversationSession
    context: ConversationContext
    text: str
    organization_id: Optional[str]
    now: datetime

    @property
    def local_now(self) -> datetime:
        return tenant_now(self.now)

    @property
    def today(self) -> date:
        return self.local_now.date()


Handler = Callable[[Turn], Awaitable[BotResponse]]


class ConversationStateMachine:
    """Menu-driven WhatsApp bot for booking, rescheduling, FAQs and handoff."""

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        scheduling_repository: Optional[SchedulingRepository] = None,
        conversation_repository: Optional[ConversationRepository] = None,
        slot_engine: Optional[SlotEngine] = None,
        booking_service: Optional[BookingService] = None,
    ):
        self._session_store = session_store
        self._scheduling = scheduling_repository
        self._conversation = conversation_repository
        self._slot_engine = slot_engine
        self._booking = booking_service

        self._handlers: dict[BotState, Handler] = {
            BotState.GREETING: self._handle_greeting,
            BotState.MAIN_MENU: self._handle_main_menu,
            BotState.FAQ_SEARCH: self._handle_faq_search,
            BotState.BOOKING_SELECT_DOCTOR: self._handle_select_doctor,
            BotState.BOOKING_SELECT_WEEK: self._handle_select_week,
            BotState.BOOKING_SELECT_DAY: self._handle_select_day,
            BotState.BOOKING_SELECT_HOUR: self._handle_select_hour,
            BotState.BOOKING_CONFIRM: self._handle_confirm,
            BotState.BOOKING_ASK_NAME: self._handle_ask_name,
            BotState.RESCHEDULE_LIST: self._handle_reschedule_list,
            BotState.CANCEL_CONFIRM: self._handle_cancel_confirm,
            BotState.HANDOFF_SECRETARY: self._handle_greeting,
            BotState.COMPLETED: self._handle_greeting,
        }

    # === Dependencies ===

    def _store(self) -> SessionStore:
        if self._session_store is None:
            self._session_store = get_session_store()
        return self._session_store

    def _repo(self) -> SchedulingRepository:
        if self._scheduling is None:
            self._scheduling = get_scheduling_repository()
        return self._scheduling

    def _conv_repo(self) -> ConversationRepository:
        if self._conversation is None:
            self._conversation = get_conversation_repository()
        return self._conversation

    def _engine(self) -> SlotEngine:
        if self._slot_engine is None:
            self._slot_engine = get_slot_engine()
        return self._slot_engine

    def _booking_service(self) -> BookingService:
        if self._booking is None:
            self._booking = get_booking_service()
        return self._booking

    # === Entry point ===

    async def handle_message(
        self,
        line_id: str,
        patient_phone: str,
        message_text: str,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BotResponse:
        """
        Process one inbound message and persist the resulting state.

        Never raises: unexpected errors produce a handoff reply.

        Args:
            line_id: WhatsApp line the message arrived on
            patient_phone: Sender phone (any format)
            message_text: Raw message text
            organization_id: Tenant of the line
            now: Override for the current instant

        Returns:
            BotResponse for this turn
        """
        now = now or _utcnow()
        phone = normalize_to_e164(patient_phone)
        session: Optional[ConversationSession] = None

        try:
            store = self._store()
            session = await store.load(line_id, phone)

            if session is None:
                session = await store.create(line_id, phone, organization_id, now=now)
            elif session.is_expired(now) or session.state == BotState.COMPLETED:
                session = await store.reset(session, now=now)
            elif is_restart_command(message_text):
                logger.info(f"Restart requested by {mask_phone(phone)}")
                session = await store.reset(session, now=now)

            turn = Turn(
                session=session,
                context=session.context,
                text=(message_text or "").strip(),
                organization_id=organization_id or session.organization_id,
                now=now,
            )

            handler = self._handlers.get(session.state, self._handle_greeting)
            response = await handler(turn)

            await store.update(
                session.id,
                response.next_state,
                turn.context,
                complete=response.session_complete,
                now=now,
            )
            logger.debug(
                f"Turn {session.id}: {session.state.value} -> {response.next_state.value}"
            )
            return response

        except Exception as e:
            logger.error(f"Bot turn failed for {mask_phone(phone)}: {e}", exc_info=True)
            if session is not None:
                await self._close_after_error(session, now)
            return BotResponse(
                message=msg.FALLBACK_ERROR,
                next_state=BotState.HANDOFF_SECRETARY,
                requires_input=False,
                session_complete=True,
            )

    async def _close_after_error(self, session: ConversationSession, now: datetime) -> None:
        try:
            await self._store().update(
                session.id, BotState.HANDOFF_SECRETARY, ConversationContext(),
                complete=True, now=now,
            )
        except Exception as e:
            logger.error(f"Could not close session {session.id} after error: {e}")

    # === Shared responses ===

    def _main_menu(self, turn: Turn, message: str = msg.MAIN_MENU_AGAIN) -> BotResponse:
        turn.context.flow = MenuContext()
        turn.context.invalid_attempts = 0
        return BotResponse(
            message=message,
            options=list(msg.MAIN_MENU_OPTIONS),
            next_state=BotState.MAIN_MENU,
        )

    async def _handoff(self, turn: Turn, message: str = msg.HANDOFF) -> BotResponse:
        """Terminal handoff. Looks up a secretary for out-of-band follow-up."""
        if turn.organization_id:
            secretary = await self._conv_repo().find_active_secretary(turn.organization_id)
            if secretary:
                logger.info(
                    f"Handoff to secretary {secretary.id} for patient "
                    f"{mask_phone(turn.session.patient_phone)}, org {turn.organization_id}"
                )
            else:
                logger.warning(f"Handoff requested but org {turn.organization_id} has no active secretary")
        return BotResponse(
            message=message,
            next_state=BotState.HANDOFF_SECRETARY,
            requires_input=False,
            session_complete=True,
        )

    @staticmethod
    def _invalid(message_options: list[str], state: BotState, prompt: str = "") -> BotResponse:
        text = msg.ERR_INVALID_OPTION if not prompt else f"{msg.ERR_INVALID_OPTION}\n\n{prompt}"
        return BotResponse(message=text, options=message_options, next_state=state)

    # === Greeting / menu ===

    async def _handle_greeting(self, turn: Turn) -> BotResponse:
        line = await self._conv_repo().get_line_settings(turn.session.line_id)
        greeting = (line.bot_greeting if line else None) or msg.DEFAULT_GREETING
        return self._main_menu(turn, greeting)

    async def _handle_main_menu(self, turn: Turn) -> BotResponse:
        text = turn.text.lower()

        if text == "1" or ("agendar" in text and "reagendar" not in text):
            turn.context.invalid_attempts = 0
            return await self._start_booking(turn)

        if text == "2" or "reagendar" in text or "cancelar" in text:
            turn.context.invalid_attempts = 0
            return await self._start_reschedule(turn)

        if text == "3" or "faq" in text or "pregunta" in text:
            turn.context.invalid_attempts = 0
            return await self._start_faq(turn)

        if text == "4" or "secretar" in text:
            return await self._handoff(turn)

        turn.context.invalid_attempts += 1
        if turn.context.invalid_attempts >= settings.max_invalid_attempts:
            logger.info(
                f"Forcing handoff after {turn.context.invalid_attempts} invalid inputs "
                f"from {mask_phone(turn.session.patient_phone)}"
            )
            return await self._handoff(turn)

        return BotResponse(
            message=msg.MAIN_MENU_INVALID,
            options=list(msg.MAIN_MENU_OPTIONS),
            next_state=BotState.MAIN_MENU,
        )

    # === FAQ ===

    async def _start_faq(self, turn: Turn) -> BotResponse:
        faq = FAQContext()
        doctors = await self._repo().get_line_doctors(turn.session.line_id)
        if len(doctors) == 1:
            faq.doctor_id = doctors[0].doctor_id
            faq.clinic_id = doctors[0].clinic_id
        turn.context.flow = faq
        return BotResponse(message=msg.FAQ_PROMPT, next_state=BotState.FAQ_SEARCH)

    async def _handle_faq_search(self, turn: Turn) -> BotResponse:
        faq = turn.context.flow if isinstance(turn.context.flow, FAQContext) else FAQContext()
        turn.context.flow = faq

        if faq.pending_followup == "answered":
            choice = resolve_option(turn.text, msg.FAQ_ANSWERED_OPTIONS)
            if choice == 0:
                return self._main_menu(turn)
            if choice == 1:
                faq.pending_followup = None
                return BotResponse(message=msg.FAQ_PROMPT, next_state=BotState.FAQ_SEARCH)
        elif faq.pending_followup == "not_found":
            choice = resolve_option(turn.text, msg.FAQ_NOT_FOUND_OPTIONS)
            if choice is None:
                choice = self._yes_no(turn.text)
            if choice == 0:
                return await self._handoff(turn)
            if choice == 1:
                return self._main_menu(turn)

        entry = None
        if turn.organization_id:
            entries = await self._conv_repo().get_faqs(
                turn.organization_id, clinic_id=faq.clinic_id, doctor_id=faq.doctor_id
            )
            entry = match_faq(turn.text, entries)

        if entry is not None:
            faq.pending_followup = "answered"
            return BotResponse(
                message=msg.FAQ_ANSWER_TEMPLATE.format(question=entry.question, answer=entry.answer),
                options=list(msg.FAQ_ANSWERED_OPTIONS),
                next_state=BotState.FAQ_SEARCH,
            )

        faq.pending_followup = "not_found"
        return BotResponse(
            message=msg.FAQ_NOT_FOUND,
            options=list(msg.FAQ_NOT_FOUND_OPTIONS),
            next_state=BotState.FAQ_SEARCH,
        )

    # === Booking ===

    async def _line_duration(self, line_id: str) -> int:
        line = await self._conv_repo().get_line_settings(line_id)
        if line and line.default_duration_minutes:
            return line.default_duration_minutes
        return settings.default_duration_minutes

    async def _start_booking(self, turn: Turn) -> BotResponse:
        doctors = await self._repo().get_line_doctors(turn.session.line_id)
        if not doctors:
            return await self._handoff(turn, msg.NO_DOCTORS)

        booking = BookingContext(
            duration=await self._line_duration(turn.session.line_id),
            available_doctors=[d.to_dict() for d in doctors],
        )
        turn.context.flow = booking

        if len(doctors) == 1:
            self._select_doctor(booking, booking.available_doctors[0])
            return await self._offer_weeks(turn, booking)

        return BotResponse(
            message=msg.SELECT_DOCTOR,
            options=self._doctor_labels(booking),
            next_state=BotState.BOOKING_SELECT_DOCTOR,
        )

    @staticmethod
    def _doctor_labels(booking: BookingContext) -> list[str]:
        return [f"{d.get('prefix') or 'Dr.'} {d['name']}" for d in booking.available_doctors]

    @staticmethod
    def _select_doctor(booking: BookingContext, doctor: dict) -> None:
        booking.doctor_id = doctor["doctor_id"]
        booking.doctor_name = f"{doctor.get('prefix') or 'Dr.'} {doctor['name']}"
        booking.calendar_id = doctor.get("calendar_id")
        booking.clinic_id = doctor.get("clinic_id")

    async def _handle_select_doctor(self, turn: Turn) -> BotResponse:
        booking = self._booking_context(turn)
        labels = self._doctor_labels(booking)
        choice = resolve_option(turn.text, labels)
        if choice is None:
            return self._invalid(labels, BotState.BOOKING_SELECT_DOCTOR, msg.SELECT_DOCTOR)

        self._select_doctor(booking, booking.available_doctors[choice])
        return await self._offer_weeks(turn, booking)

    def _booking_context(self, turn: Turn) -> BookingContext:
        if not isinstance(turn.context.flow, BookingContext):
            raise ValueError(f"Expected booking context, got {turn.context.flow.kind}")
        return turn.context.flow

    async def _future_slots(
        self,
        turn: Turn,
        booking: BookingContext,
        start: date,
        end: date,
    ) -> dict[date, list[str]]:
        """Open slots per day in [start, end], dropping days before today and past times."""
        start = max(start, turn.today)
        if end < start:
            return {}
        by_day = await self._engine().slots_for_range(
            booking.doctor_id, start, end, booking.duration, calendar_id=booking.calendar_id
        )
        local_now = turn.local_now
        return {
            day: filter_future_slots(slots, day, local_now)
            for day, slots in by_day.items()
        }

    async def _offer_weeks(self, turn: Turn, booking: BookingContext, notice: str = "") -> BotResponse:
        monday = week_monday(turn.today)
        weeks_ahead = settings.booking_weeks_ahead
        by_day = await self._future_slots(
            turn, booking, monday, monday + timedelta(days=7 * weeks_ahead - 1)
        )

        booking.weeks = []
        for i in range(weeks_ahead):
            week_start = monday + timedelta(days=7 * i)
            week_days = [week_start + timedelta(days=d) for d in range(7)]
            if any(by_day.get(d) for d in week_days):
                booking.weeks.append(week_start.isoformat())

        if not booking.weeks:
            return await self._handoff(turn, msg.NO_WEEKS)

        prompt = msg.SELECT_WEEK.format(doctor=booking.doctor_name)
        return BotResponse(
            message=f"{notice}\n\n{prompt}" if notice else prompt,
            options=self._week_labels(booking),
            next_state=BotState.BOOKING_SELECT_WEEK,
        )

    @staticmethod
    def _week_labels(booking: BookingContext) -> list[str]:
        labels = []
        for iso in booking.weeks:
            start = date.fromisoformat(iso)
            labels.append(format_week_label(start, start + timedelta(days=6)))
        return labels

    async def _handle_select_week(self, turn: Turn) -> BotResponse:
        booking = self._booking_context(turn)
        labels = self._week_labels(booking)
        choice = resolve_option(turn.text, labels)
        if choice is None:
            return self._invalid(
                labels, BotState.BOOKING_SELECT_WEEK,
                msg.SELECT_WEEK.format(doctor=booking.doctor_name),
            )

        booking.week_start = booking.weeks[choice]
        return await self._offer_days(turn, booking)

    async def _offer_days(self, turn: Turn, booking: BookingContext, notice: str = "") -> BotResponse:
        week_start = date.fromisoformat(booking.week_start)
        by_day = await self._future_slots(turn, booking, week_start, week_start + timedelta(days=6))
        booking.days = [d.isoformat() for d in sorted(by_day) if by_day[d]]

        if not booking.days:
            return await self._offer_weeks(turn, booking, msg.ERR_NO_AVAILABILITY)

        return BotResponse(
            message=f"{notice}\n\n{msg.SELECT_DAY}" if notice else msg.SELECT_DAY,
            options=self._day_labels(booking),
            next_state=BotState.BOOKING_SELECT_DAY,
        )

    @staticmethod
    def _day_labels(booking: BookingContext) -> list[str]:
        return [format_day_label(date.fromisoformat(d)) for d in booking.days]

    async def _handle_select_day(self, turn: Turn) -> BotResponse:
        booking = self._booking_context(turn)
        labels = self._day_labels(booking)
        choice = resolve_option(turn.text, labels)
        if choice is None:
            return self._invalid(labels, BotState.BOOKING_SELECT_DAY, msg.SELECT_DAY)

        booking.date = booking.days[choice]
        booking.hour_page = 0
        return await self._offer_hours(turn, booking)

    async def _offer_hours(self, turn: Turn, booking: BookingContext, notice: str = "") -> BotResponse:
        """Refresh the hour list for the chosen day and show the first page."""
        day = date.fromisoformat(booking.date)
        slots = await self._engine().available_slots(
            booking.doctor_id, day, booking.duration, calendar_id=booking.calendar_id
        )
        booking.hours = filter_future_slots(slots, day, turn.local_now)
        booking.hour_page = 0

        if not booking.hours:
            return await self._offer_days(turn, booking, notice or msg.ERR_NO_AVAILABILITY)

        return self._render_hours(booking, notice)

    @staticmethod
    def _hour_page(booking: BookingContext) -> tuple[list[str], bool]:
        size = settings.hours_page_size
        start = booking.hour_page * size
        page = booking.hours[start:start + size]
        return page, start + size < len(booking.hours)

    def _hour_labels(self, booking: BookingContext) -> list[str]:
        page, has_more = self._hour_page(booking)
        labels = [format_time_12h(h) for h in page]
        if has_more:
            labels.append(msg.MORE_HOURS)
        return labels

    def _render_hours(self, booking: BookingContext, notice: str = "") -> BotResponse:
        prompt = msg.SELECT_HOUR.format(day=format_day_label(date.fromisoformat(booking.date)))
        return BotResponse(
            message=f"{notice}\n\n{prompt}" if notice else prompt,
            options=self._hour_labels(booking),
            next_state=BotState.BOOKING_SELECT_HOUR,
        )

    async def _handle_select_hour(self, turn: Turn) -> BotResponse:
        booking = self._booking_context(turn)
        labels = self._hour_labels(booking)
        choice = resolve_option(turn.text, labels)
        if choice is None:
            choice = self._match_clock_time(turn.text, booking)
        if choice is None:
            prompt = msg.SELECT_HOUR.format(day=format_day_label(date.fromisoformat(booking.date)))
            return self._invalid(labels, BotState.BOOKING_SELECT_HOUR, prompt)

        if labels[choice] == msg.MORE_HOURS:
            booking.hour_page += 1
            return self._render_hours(booking)

        page, _ = self._hour_page(booking)
        booking.time = page[choice]
        return await self._offer_confirm(turn, booking)

    def _match_clock_time(self, text: str, booking: BookingContext) -> Optional[int]:
        """Accept a typed "15:00" for an hour on the current page."""
        try:
            typed = minutes_to_hhmm(to_minutes(text))
        except ValueError:
            return None
        page, _ = self._hour_page(booking)
        return page.index(typed) if typed in page else None

    async def _offer_confirm(self, turn: Turn, booking: BookingContext) -> BotResponse:
        if booking.patient_id is None:
            phone = turn.session.patient_phone
            patient = await self._repo().find_patient_by_phone(
                normalize_to_e164(phone), to_local(phone), turn.organization_id
            )
            if patient:
                booking.patient_id = patient.id
                booking.patient_name = patient.name

        title = "🔁 *Reagendar cita*" if booking.is_reschedule else "📅 *Agendar cita*"
        summary = msg.CONFIRM_SUMMARY.format(
            title=title,
            sep=msg.SEP,
            doctor=booking.doctor_name,
            day=format_day_label(date.fromisoformat(booking.date)),
            time=format_time_12h(booking.time),
        )
        return BotResponse(
            message=summary,
            options=list(msg.CONFIRM_OPTIONS),
            next_state=BotState.BOOKING_CONFIRM,
        )

    async def _handle_confirm(self, turn: Turn) -> BotResponse:
        booking = self._booking_context(turn)
        choice = resolve_option(turn.text, msg.CONFIRM_OPTIONS)
        if choice is None and self._yes_no(turn.text) == 0:
            choice = 0

        if choice == 0:
            if booking.patient_id is None:
                return BotResponse(message=msg.ASK_NAME, next_state=BotState.BOOKING_ASK_NAME)
            return await self._finalize_booking(turn, booking)
        if choice == 1:
            return await self._offer_hours(turn, booking)
        if choice == 2:
            return self._main_menu(turn, f"{msg.BOOKING_ABORTED}\n\n{msg.MAIN_MENU_AGAIN}")

        return self._invalid(list(msg.CONFIRM_OPTIONS), BotState.BOOKING_CONFIRM)

    async def _handle_ask_name(self, turn: Turn) -> BotResponse:
        booking = self._booking_context(turn)
        name = " ".join(turn.text.split())
        if len(name) < 2 or any(ch.isdigit() for ch in name):
            return BotResponse(message=msg.ASK_NAME_INVALID, next_state=BotState.BOOKING_ASK_NAME)

        patient = await self._repo().create_patient(
            name=name,
            phone=turn.session.patient_phone,
            organization_id=turn.organization_id,
            doctor_id=booking.doctor_id,
        )
        booking.patient_id = patient.id
        booking.patient_name = patient.name
        return await self._finalize_booking(turn, booking)

    async def _finalize_booking(self, turn: Turn, booking: BookingContext) -> BotResponse:
        day = date.fromisoformat(booking.date)
        service = self._booking_service()

        if booking.is_reschedule:
            result = await service.reschedule(
                original_appointment_id=booking.original_appointment_id,
                doctor_id=booking.doctor_id,
                patient_id=booking.patient_id,
                day=day,
                time_str=booking.time,
                duration_minutes=booking.duration,
                organization_id=turn.organization_id,
                calendar_id=booking.calendar_id,
            )
        else:
            result = await service.book(
                doctor_id=booking.doctor_id,
                patient_id=booking.patient_id,
                day=day,
                time_str=booking.time,
                duration_minutes=booking.duration,
                organization_id=turn.organization_id,
                calendar_id=booking.calendar_id,
            )

        if not result.success:
            if result.error_code == "SLOT_TAKEN":
                return await self._offer_hours(turn, booking, msg.SLOT_TAKEN)
            logger.error(f"Booking failed for session {turn.session.id}: {result.message}")
            return await self._handoff(turn, msg.BOOKING_FAILED)

        template = msg.RESCHEDULE_DONE if booking.is_reschedule else msg.BOOKING_DONE
        return BotResponse(
            message=template.format(
                doctor=booking.doctor_name,
                when=format_appointment_datetime(day, booking.time),
            ),
            next_state=BotState.COMPLETED,
            requires_input=False,
            session_complete=True,
        )

    # === Reschedule / cancel ===

    async def _start_reschedule(self, turn: Turn) -> BotResponse:
        phone = turn.session.patient_phone
        patient = await self._repo().find_patient_by_phone(
            normalize_to_e164(phone), to_local(phone), turn.organization_id
        )
        if patient is None:
            return await self._handoff(turn, msg.PATIENT_NOT_FOUND)

        upcoming = await self._repo().get_upcoming_appointments(
            patient.id,
            turn.today,
            organization_id=turn.organization_id,
            limit=settings.upcoming_appointments_limit,
        )
        if not upcoming:
            turn.context.flow = MenuContext()
            # Any reply returns to the greeting menu
            return BotResponse(
                message=msg.NO_APPOINTMENTS,
                options=list(msg.NO_APPOINTMENTS_OPTIONS),
                next_state=BotState.GREETING,
            )

        reschedule = RescheduleContext(
            patient_id=patient.id,
            patient_name=patient.name,
            appointments=[
                {
                    "id": a.id,
                    "doctor_id": a.doctor_id,
                    "doctor_name": a.doctor_display_name,
                    "calendar_id": a.calendar_id,
                    "date": a.date.isoformat(),
                    "time": minutes_to_hhmm(to_minutes(a.time)),
                    "duration": a.duration_minutes,
                }
                for a in upcoming
            ],
        )
        turn.context.flow = reschedule

        if len(reschedule.appointments) == 1:
            reschedule.selected_appointment_id = reschedule.appointments[0]["id"]
            return self._offer_actions(reschedule)

        return BotResponse(
            message=msg.SELECT_APPOINTMENT,
            options=self._appointment_labels(reschedule),
            next_state=BotState.RESCHEDULE_LIST,
        )

    @staticmethod
    def _when(appointment: dict) -> str:
        return format_appointment_datetime(appointment["date"], appointment["time"])

    def _appointment_labels(self, reschedule: RescheduleContext) -> list[str]:
        return [
            f"{a['doctor_name']} - {format_day_label(date.fromisoformat(a['date']))} {format_time_12h(a['time'])}"
            for a in reschedule.appointments
        ]

    def _reschedule_context(self, turn: Turn) -> RescheduleContext:
        if not isinstance(turn.context.flow, RescheduleContext):
            raise ValueError(f"Expected reschedule context, got {turn.context.flow.kind}")
        return turn.context.flow

    async def _handle_reschedule_list(self, turn: Turn) -> BotResponse:
        reschedule = self._reschedule_context(turn)
        labels = self._appointment_labels(reschedule)
        choice = resolve_option(turn.text, labels)
        if choice is None:
            return self._invalid(labels, BotState.RESCHEDULE_LIST, msg.SELECT_APPOINTMENT)

        reschedule.selected_appointment_id = reschedule.appointments[choice]["id"]
        return self._offer_actions(reschedule)

    def _offer_actions(self, reschedule: RescheduleContext) -> BotResponse:
        appointment = reschedule.selected()
        reschedule.cancel_phase = CancelPhase.CHOOSE_ACTION
        return BotResponse(
            message=msg.APPOINTMENT_ACTION.format(
                doctor=appointment["doctor_name"], when=self._when(appointment)
            ),
            options=list(msg.APPOINTMENT_ACTION_OPTIONS),
            next_state=BotState.CANCEL_CONFIRM,
        )

    async def _handle_cancel_confirm(self, turn: Turn) -> BotResponse:
        reschedule = self._reschedule_context(turn)
        appointment = reschedule.selected()
        if appointment is None:
            return self._main_menu(turn)

        if reschedule.cancel_phase == CancelPhase.CHOOSE_ACTION:
            choice = resolve_option(turn.text, msg.APPOINTMENT_ACTION_OPTIONS)
            if choice == 0:
                return await self._start_reschedule_booking(turn, reschedule, appointment)
            if choice == 1:
                reschedule.cancel_phase = CancelPhase.CONFIRM_CANCEL
                return BotResponse(
                    message=msg.CANCEL_CONFIRM.format(
                        doctor=appointment["doctor_name"], when=self._when(appointment)
                    ),
                    options=list(msg.CANCEL_CONFIRM_OPTIONS),
                    next_state=BotState.CANCEL_CONFIRM,
                )
            if choice == 2:
                return self._main_menu(turn)
            return self._invalid(list(msg.APPOINTMENT_ACTION_OPTIONS), BotState.CANCEL_CONFIRM)

        choice = resolve_option(turn.text, msg.CANCEL_CONFIRM_OPTIONS)
        if choice is None:
            choice = self._yes_no(turn.text)

        if choice == 0:
            result = await self._booking_service().cancel(
                appointment["id"], notes="Cancelada por el paciente vía WhatsApp"
            )
            if not result.success:
                return await self._handoff(turn)
            return BotResponse(
                message=msg.CANCEL_DONE.format(
                    doctor=appointment["doctor_name"], when=self._when(appointment)
                ),
                next_state=BotState.COMPLETED,
                requires_input=False,
                session_complete=True,
            )
        if choice == 1:
            return self._main_menu(turn, f"{msg.CANCEL_KEPT}\n\n{msg.MAIN_MENU_AGAIN}")

        return self._invalid(list(msg.CANCEL_CONFIRM_OPTIONS), BotState.CANCEL_CONFIRM)

    async def _start_reschedule_booking(
        self,
        turn: Turn,
        reschedule: RescheduleContext,
        appointment: dict,
    ) -> BotResponse:
        booking = BookingContext(
            doctor_id=appointment["doctor_id"],
            doctor_name=appointment["doctor_name"],
            calendar_id=appointment.get("calendar_id"),
            duration=appointment.get("duration") or await self._line_duration(turn.session.line_id),
            patient_id=reschedule.patient_id,
            patient_name=reschedule.patient_name,
            is_reschedule=True,
            original_appointment_id=appointment["id"],
        )
        turn.context.flow = booking
        return await self._offer_weeks(turn, booking)

    # === Helpers ===

    @staticmethod
    def _yes_no(text: str) -> Optional[int]:
        """0 for yes, 1 for no, None otherwise."""
        word = text.strip().lower().rstrip("!.")
        if word in YES_WORDS:
            return 0
        if word in NO_WORDS:
            return 1
        return None


# Singleton
_machine: Optional[ConversationStateMachine] = None


def get_state_machine() -> ConversationStateMachine:
    """Get singleton ConversationStateMachine."""
    global _machine
    if _machine is None:
        _machine = ConversationStateMachine()
    return _machine
