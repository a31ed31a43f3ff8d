"""Tests for the appointment double-booking indexes."""

import pytest

from clinicbot.models.database import CANCELLED_STATUSES, Appointment


def _index(name):
    return next(index for index in Appointment.__table__.indexes if index.name == name)


class TestAppointmentSlotIndexes:
    """Test the partial unique indexes guarding a slot."""

    @pytest.mark.parametrize("name,columns", [
        ("uq_appointment_doctor_slot", ["doctor_id", "date", "time"]),
        ("uq_appointment_calendar_slot", ["calendar_id", "date", "time"]),
    ])
    def test_unique_on_slot(self, name, columns):
        index = _index(name)

        assert index.unique
        assert [column.name for column in index.columns] == columns

    @pytest.mark.parametrize("name", ["uq_appointment_doctor_slot", "uq_appointment_calendar_slot"])
    def test_cancelled_rows_free_the_slot(self, name):
        """Every cancelled spelling is excluded, matching the slot engine."""
        where = str(_index(name).dialect_options["postgresql"]["where"])

        for cancelled in CANCELLED_STATUSES:
            assert f"'{cancelled}'" in where
        assert "NOT IN" in where

    def test_calendar_index_skips_rows_without_calendar(self):
        where = str(_index("uq_appointment_calendar_slot").dialect_options["postgresql"]["where"])
        assert "calendar_id IS NOT NULL" in where
