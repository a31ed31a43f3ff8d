"""Patient-facing bot copy (Spanish)."""

SEP = "────────────"

DEFAULT_GREETING = "¡Hola! Soy el asistente virtual. ¿En qué puedo ayudarte?"

MAIN_MENU_OPTIONS = [
    "Agendar cita",
    "Reagendar o cancelar cita",
    "Preguntas frecuentes (FAQs)",
    "Hablar con secretaría",
]

MAIN_MENU_INVALID = "No entendí tu respuesta. Por favor selecciona una opción:"
MAIN_MENU_AGAIN = "¿En qué más puedo ayudarte?"

ERR_INVALID_OPTION = "⚠️ Opcion no valida.\n👉 Responda con el numero de la lista."
ERR_NO_AVAILABILITY = "⚠️ No encontramos disponibilidad para esa seleccion."

# FAQ
FAQ_PROMPT = "¿Qué te gustaría saber? Escribe tu pregunta y buscaré la respuesta."
FAQ_ANSWER_TEMPLATE = "*{question}*\n\n{answer}\n\n¿Necesitas algo más?"
FAQ_ANSWERED_OPTIONS = ["Volver al menú principal", "Otra pregunta"]
FAQ_NOT_FOUND = "No encontré una respuesta para esa pregunta. ¿Te gustaría hablar con la secretaría?"
FAQ_NOT_FOUND_OPTIONS = ["Sí, contactar secretaría", "No, volver al menú"]

# Handoff
HANDOFF = "Te estoy conectando con nuestra secretaría. En breve recibirás respuesta. 📞"
FALLBACK_ERROR = "Tuvimos un problema procesando tu mensaje. " + HANDOFF

# Booking
NO_DOCTORS = "No hay doctores disponibles para agendar. Te conecto con la secretaría."
SELECT_DOCTOR = "¿Con qué doctor deseas agendar?"
NO_WEEKS = (
    "No hay disponibilidad en las próximas 2 semanas. "
    "Te conecto con la secretaría para agendar en fechas futuras."
)
SELECT_WEEK = "Selecciona la semana para tu cita con {doctor}:"
SELECT_DAY = "Selecciona el día:"
SELECT_HOUR = "Selecciona la hora para el {day}:"
MORE_HOURS = "Ver más horarios"
CONFIRM_SUMMARY = (
    "{title}\n{sep}\n"
    "👨‍⚕️ {doctor}\n"
    "📅 {day}\n"
    "🕒 {time}\n"
    "{sep}\n"
    "¿Confirmas la cita?"
)
CONFIRM_OPTIONS = ["Confirmar", "Cambiar horario", "Cancelar"]
ASK_NAME = "Para agendar necesito tu nombre completo. ¿Cómo te llamas?"
ASK_NAME_INVALID = "Por favor escribe tu nombre completo."
SLOT_TAKEN = "⚠️ Ese horario acaba de ser reservado. Elige otro horario:"
BOOKING_DONE = "✅ ¡Listo! Tu cita con {doctor} quedó agendada para el {when}."
RESCHEDULE_DONE = "✅ ¡Listo! Tu cita con {doctor} fue reagendada para el {when}."
BOOKING_ABORTED = "Entendido, no se agendó ninguna cita."
BOOKING_FAILED = "No pudimos completar la reserva. Te conecto con la secretaría."

# Reschedule / cancel
PATIENT_NOT_FOUND = "No encontré tu información en el sistema. Por favor contacta a la secretaría."
NO_APPOINTMENTS = "No tienes citas programadas para reagendar o cancelar."
NO_APPOINTMENTS_OPTIONS = ["Volver al menú principal"]
SELECT_APPOINTMENT = "Estas son tus próximas citas. ¿Cuál deseas modificar?"
APPOINTMENT_ACTION = "Tu cita con {doctor} el {when}. ¿Qué deseas hacer?"
APPOINTMENT_ACTION_OPTIONS = ["Reagendar", "Cancelar cita", "Volver al menú principal"]
CANCEL_CONFIRM = "¿Seguro que deseas cancelar tu cita con {doctor} el {when}?"
CANCEL_CONFIRM_OPTIONS = ["Sí, cancelar", "No, mantener cita"]
CANCEL_DONE = "❌ Tu cita con {doctor} del {when} fue cancelada."
CANCEL_KEPT = "Perfecto, tu cita se mantiene."
