"""
Tests for AppointmentMigration and EventMigration.
"""
from datetime import datetime

import pytest

from services.migration.appointments import (
    AppointmentMigration, calculate_duration, transform_appointment, validate_appointment
)
from services.migration.events import EventMigration, clean_url, transform_event, validate_event
from services.migration.job import MigrationOptions
from services.migration.sources import InMemoryQueryExecutor


def appointment_row(appointment_id, **overrides):
    row = {
        "ID": appointment_id,
        "StartDate": datetime(2022, 6, 1, 9, 0),
        "EndDate": datetime(2022, 6, 1, 9, 45),
        "Subject": "Orthotic fitting",
        "ResourceID": 3,
        "ClientID": 55,
        "ClinicName": "Century Care",
        "Status": 1,
        "IsActive": None,
    }
    row.update(overrides)
    return row


def event_row(event_id, **overrides):
    row = {
        "event_id": event_id,
        "event_title": "Staff meeting",
        "event_date": "2021-09-15",
        "event_is_public": 1,
        "event_is_approved": 0,
        "event_url": "clinic.example.com",
        "sb_client_clinic_name": None,
        "custom_CheckBox2": 1,
    }
    row.update(overrides)
    return row


class TestAppointmentTransforms:
    """Tests for appointment transform and validation."""

    def test_duration_from_column(self):
        """Test the duration column wins when present."""
        assert calculate_duration({"Duration": 20}) == 20

    def test_duration_from_dates(self):
        """Test duration falls back to the start and end times."""
        assert calculate_duration(appointment_row(1)) == 45

    def test_duration_default(self):
        """Test duration defaults when nothing is usable."""
        assert calculate_duration({}) == 30

    def test_transform(self):
        """Test an appointment row maps onto the destination document."""
        doc = transform_appointment(appointment_row(10))
        assert doc["appointmentId"] == 10
        assert doc["clientId"] == "55"
        assert doc["duration"] == 45
        assert doc["isActive"] is True
        assert doc["readyToBill"] is False

    def test_end_must_follow_start(self):
        """Test appointments ending before they start are invalid."""
        doc = transform_appointment(appointment_row(1, EndDate=datetime(2022, 6, 1, 8, 0), Duration=10))
        assert validate_appointment(doc) is False

    def test_valid(self):
        """Test a complete appointment passes validation."""
        assert validate_appointment(transform_appointment(appointment_row(1))) is True

    def test_missing_resource(self):
        """Test appointments without a resource are invalid."""
        assert validate_appointment(transform_appointment(appointment_row(1, ResourceID=None))) is False


@pytest.mark.asyncio
class TestAppointmentMigration:
    """Tests for AppointmentMigration.execute()."""

    async def test_filters(self, mongo_db, data_filter):
        """Test test-data, age and clinic filters drop appointments."""
        rows = [
            appointment_row(1),
            appointment_row(2, Subject="TEST appointment"),
            appointment_row(3, StartDate=datetime(2005, 1, 1, 9), EndDate=datetime(2005, 1, 1, 10)),
            appointment_row(4, ClinicName="Old Defunct Clinic"),
            appointment_row(5, Duration=2000),
            appointment_row(6, Subject=""),
        ]
        source = InMemoryQueryExecutor({"Appointments": rows})

        result = await AppointmentMigration(mongo_db, source, MigrationOptions(), data_filter).execute()

        assert result.total_records == 6
        assert result.migrated_records == 1
        assert result.rejected_records == 1
        assert [d["appointmentId"] for d in mongo_db["appointments"].documents] == [1]

    async def test_statistics_after_run(self, mongo_db, data_filter):
        """Test statistics and clinic distribution after a run."""
        source = InMemoryQueryExecutor({"Appointments": [appointment_row(1), appointment_row(2, Status=0)]})
        migration = AppointmentMigration(mongo_db, source, MigrationOptions(), data_filter)
        await migration.execute()

        stats = await migration.get_statistics()
        assert stats["total"] == 2
        assert stats["completed"] == 1
        assert await migration.get_clinic_distribution() == [{"clinic": "Century Care", "appointments": 2}]


class TestEventTransforms:
    """Tests for event transform and validation."""

    def test_transform(self):
        """Test an event row maps onto the destination document."""
        doc = transform_event(event_row(5))
        assert doc["eventId"] == 5
        assert doc["isPublic"] is True
        assert doc["isApproved"] is False
        assert doc["url"] == "http://clinic.example.com"
        assert doc["customCheckBox2"] is True
        assert doc["customCheckBox1"] is False
        assert doc["eventDate"] == datetime(2021, 9, 15)

    def test_clean_url(self):
        """Test event URLs are kept or blanked."""
        assert clean_url("https://a.example") == "https://a.example"
        assert clean_url("  ") is None

    def test_bad_time_range_is_only_reported(self):
        """Test an event ending before it starts still validates."""
        doc = transform_event(event_row(1, event_time="10:00", event_time_end="09:00"))
        assert validate_event(doc) is True

    def test_missing_title(self):
        """Test events without a title are invalid."""
        assert validate_event(transform_event(event_row(1, event_title=" "))) is False


@pytest.mark.asyncio
class TestEventMigration:
    """Tests for EventMigration.execute()."""

    async def test_filters(self, mongo_db, data_filter):
        """Test events from dropped clinics are filtered out."""
        rows = [
            event_row(1),
            event_row(2, sb_client_clinic_name="Century Care", sb_client_id="C1"),
            event_row(3, sb_client_clinic_name="Old Defunct Clinic"),
            event_row(4, event_title="Demo day"),
            event_row(5, event_date="1995-01-01"),
        ]
        source = InMemoryQueryExecutor({"events": rows})

        result = await EventMigration(mongo_db, source, MigrationOptions(), data_filter).execute()

        assert result.migrated_records == 2
        assert sorted(d["eventId"] for d in mongo_db["events"].documents) == [1, 2]
        # single bulk read, no paging
        assert not any("OFFSET" in q for q in source.queries)

    async def test_statistics(self, mongo_db, data_filter):
        """Test event statistics after a run."""
        rows = [event_row(1), event_row(2, sb_client_clinic_name="Century Care", sb_client_id="C1")]
        migration = EventMigration(mongo_db, InMemoryQueryExecutor({"events": rows}), MigrationOptions(), data_filter)
        await migration.execute()

        stats = await migration.get_statistics()
        assert stats == {"total": 2, "public": 2, "approved": 0, "with_clients": 1}
