"""
Tests for ClientClinicRelationshipMigration and ContactHistoryMigration.
"""
from datetime import datetime

import pytest

from services.migration.client_clinic_relationships import (
    ClientClinicRelationshipMigration, normalize_relationship_type, transform_relationship,
    validate_relationship
)
from services.migration.contact_history import (
    ContactHistoryMigration, normalize_contact_type, normalize_direction, normalize_priority,
    transform_contact, validate_contact
)
from services.migration.job import MigrationOptions
from services.migration.sources import InMemoryQueryExecutor


def relationship_row(relationship_id, **overrides):
    row = {
        "relationship_id": relationship_id,
        "client_id": "C1",
        "clinic_name": "Century Care",
        "relationship_type": "Main clinic",
        "start_date": "2018-01-01",
        "is_primary": "Y",
        "total_amount_billed": "125.50",
    }
    row.update(overrides)
    return row


def contact_row(contact_id, **overrides):
    row = {
        "contact_id": contact_id,
        "client_id": "C1",
        "clinic_name": "Century Care",
        "contact_type": "Phone call",
        "contact_direction": "Outgoing",
        "contact_date": "2023-04-05 14:30",
        "priority": "High",
    }
    row.update(overrides)
    return row


class TestRelationshipTransforms:
    """Tests for client-clinic relationship transforms."""

    @pytest.mark.parametrize("value,expected", [
        ("Main clinic", "primary"),
        ("Alternate", "secondary"),
        ("temp", "temporary"),
        ("Referred", "referral"),
        ("Disabled", "inactive"),
        (None, "primary"),
        ("something else", "primary"),
    ])
    def test_relationship_type(self, value, expected):
        """Test relationship type normalization."""
        assert normalize_relationship_type(value) == expected

    def test_defaults(self):
        """Test relationship defaults for sparse rows."""
        doc = transform_relationship(relationship_row(1))
        assert doc["isActive"] is True
        assert doc["isPrimary"] is True
        assert doc["permissions"] == {
            "canSchedule": True,
            "canViewRecords": True,
            "canReceiveBills": True,
            "canAuthorizeInsurance": False,
        }
        assert doc["details"]["preferredServices"] == []
        assert doc["billing"] is None
        assert doc["stats"]["averageAppointmentDuration"] == 60
        assert doc["stats"]["totalAmountBilled"] == 125.5

    def test_billing_block(self):
        """Test the billing block is built when present."""
        doc = transform_relationship(relationship_row(1, billing_city="Toronto"))
        assert doc["billing"]["billingAddress"]["city"] == "Toronto"
        assert doc["billing"]["insurancePrimary"] is True

    def test_validation(self):
        """Test relationships need a client."""
        assert validate_relationship(transform_relationship(relationship_row(1))) is True
        assert validate_relationship(transform_relationship(relationship_row(1, client_id=None))) is False


class TestContactTransforms:
    """Tests for contact history normalisation."""

    @pytest.mark.parametrize("value,expected", [
        ("Phone call", "call"),
        ("E-mail", "email"),
        ("Text message", "sms"),
        ("In-person visit", "visit"),
        ("Memo", "note"),
        ("Appt reminder", "appointment"),
        ("Fax", "other"),
    ])
    def test_contact_type(self, value, expected):
        """Test contact type normalization."""
        assert normalize_contact_type(value) == expected

    def test_missing_contact_type(self):
        """Test a blank contact type normalizes to None."""
        assert normalize_contact_type("  ") is None

    @pytest.mark.parametrize("value,expected", [
        ("Incoming", "inbound"),
        ("in", "inbound"),
        ("Outgoing", "outbound"),
        ("Internal", "internal"),
        (None, "internal"),
    ])
    def test_direction(self, value, expected):
        """Test contact direction normalization."""
        assert normalize_direction(value) == expected

    @pytest.mark.parametrize("value,expected", [
        ("Low", "low"), ("HIGH", "high"), ("critical", "urgent"), (None, "medium"), ("normal", "medium"),
    ])
    def test_priority(self, value, expected):
        """Test contact priority normalization."""
        assert normalize_priority(value) == expected

    def test_transform(self):
        """Test a contact row maps onto the destination document."""
        doc = transform_contact(contact_row(9, insurance_company="Sun Life", claim_number="CL-1"))
        assert doc["contactType"] == "call"
        assert doc["direction"] == "outbound"
        assert doc["communication"]["method"] == "call"
        assert doc["createdAt"] == datetime(2023, 4, 5, 14, 30)
        assert doc["isActive"] is True
        assert doc["insuranceContext"] == {
            "insuranceCompany": "Sun Life",
            "claimNumber": "CL-1",
            "authorizationNumber": None,
        }

    def test_no_insurance_context(self):
        """Test contacts without insurance get no context block."""
        assert transform_contact(contact_row(1))["insuranceContext"] is None

    def test_validation_requires_type(self):
        """Test contacts need a contact type."""
        assert validate_contact(transform_contact(contact_row(1))) is True
        assert validate_contact(transform_contact(contact_row(1, contact_type=None))) is False


@pytest.mark.asyncio
class TestRelationshipMigrations:
    """Tests for the client-dependent migrations."""

    async def test_relationship_migration(self, mongo_db, data_filter):
        """Test the client-clinic relationship migration."""
        rows = [
            relationship_row(1),
            relationship_row(2, clinic_name="Old Defunct Clinic"),
            relationship_row(3, end_date="2017-01-01"),
        ]
        source = InMemoryQueryExecutor({"sb_client_and_clinic": rows})
        migration = ClientClinicRelationshipMigration(mongo_db, source, MigrationOptions(), data_filter)

        result = await migration.execute()
        report = await migration.validate_migration()

        assert result.migrated_records == 2
        assert report["date_order_violations"] == 1

    async def test_contact_history_migration(self, mongo_db, data_filter):
        """Test the contact history migration."""
        rows = [
            contact_row(1),
            contact_row(2, contact_type=""),
            contact_row(3, clinic_name="Old Defunct Clinic"),
            contact_row(4),
        ]
        source = InMemoryQueryExecutor({"sb_contact_history": rows})

        result = await ContactHistoryMigration(mongo_db, source, MigrationOptions(), data_filter).execute()

        assert result.total_records == 4
        assert result.migrated_records == 2
        assert result.rejected_records == 1
        assert [d["id"] for d in mongo_db["contacthistories"].documents] == [1, 4]
