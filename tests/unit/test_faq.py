"""Tests for FAQ matching."""

from clinicbot.core.conversation.faq import FAQEntry, match_faq, score_entry


def _entry(id, question, keywords=None, scope_priority=3, display_order=0):
    return FAQEntry(
        id=id,
        question=question,
        answer=f"answer {id}",
        keywords=keywords or [],
        scope_priority=scope_priority,
        display_order=display_order,
    )


class TestScoreEntry:
    """Test keyword and question-word scoring."""

    def test_keyword_and_question_words(self):
        """Keyword hit counts 1; each long query word in the question counts 0.5."""
        entry = _entry("1", "¿Cuál es el horario de atención?", keywords=["horario"])

        # "horario" keyword (1) + "horario" and "atención" in question (0.5 each)
        assert score_entry("horario de atención", entry) == 2.0

    def test_short_words_ignored(self):
        entry = _entry("1", "¿Dónde es la clínica?")
        assert score_entry("es la", entry) == 0.0


class TestMatchFAQ:
    """Test best-match selection."""

    def test_best_score_wins(self):
        entries = [
            _entry("hours", "Horario de atención", keywords=["horario"]),
            _entry("price", "Precio de la consulta", keywords=["precio", "costo"]),
        ]

        match = match_faq("¿Cuál es el costo y precio?", entries)

        assert match.id == "price"

    def test_doctor_scope_wins_tie(self):
        """Equal scores: the doctor-scoped entry beats the organization one."""
        org_entry = _entry("org", "Estacionamiento", keywords=["parqueo"], scope_priority=3)
        doctor_entry = _entry("doc", "Estacionamiento", keywords=["parqueo"], scope_priority=1)

        match = match_faq("hay parqueo", [org_entry, doctor_entry])

        assert match.id == "doc"

    def test_display_order_breaks_tie_within_scope(self):
        second = _entry("b", "Pagos", keywords=["tarjeta"], scope_priority=2, display_order=2)
        first = _entry("a", "Pagos", keywords=["tarjeta"], scope_priority=2, display_order=1)

        assert match_faq("aceptan tarjeta", [second, first]).id == "a"

    def test_no_match(self):
        entries = [_entry("hours", "Horario de atención", keywords=["horario"])]
        assert match_faq("xyz", entries) is None

    def test_empty_query(self):
        entries = [_entry("hours", "Horario", keywords=["horario"])]
        assert match_faq("   ", entries) is None

    def test_case_insensitive(self):
        entries = [_entry("hours", "Horario", keywords=["Horario"])]
        assert match_faq("HORARIO", entries).id == "hours"
