"""
Clinic Back Office - Client/Clinic Relationship Migration

Migrates sb_client_and_clinic into `clientclinicrelationships`. Runs after
the client migration; rows for clinics outside the retained set are dropped.
"""

import logging
from typing import Any, Dict, List

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery, not_null
from .transforms import clean_text, normalize_choice, parse_date, to_bool, to_float, to_int, utcnow

logger = logging.getLogger(__name__)

RELATIONSHIP_TYPES = (
    ("primary", ("primary", "main")),
    ("secondary", ("secondary", "alternate")),
    ("temporary", ("temporary", "temp")),
    ("referral", ("referral", "refer")),
    ("inactive", ("inactive", "disabled")),
)

RELATIONSHIP_COLUMNS = (
    "relationship_id", "client_id", "clinic_name", "relationship_type",
    "start_date", "end_date", "is_active", "is_primary", "can_schedule",
    "can_view_records", "can_receive_bills", "can_authorize_insurance",
    "referred_by", "referral_date", "referral_reason", "notes",
    "preferred_practitioner", "billing_street", "billing_city",
    "billing_province", "billing_postal_code", "preferred_payment_method",
    "insurance_primary", "special_instructions", "total_appointments",
    "completed_appointments", "cancelled_appointments", "no_show_appointments",
    "last_appointment_date", "total_amount_billed", "total_amount_paid",
    "average_appointment_duration", "created_date", "modified_date",
    "created_by", "modified_by",
)


def normalize_relationship_type(value: Any) -> str:
    return normalize_choice(value, RELATIONSHIP_TYPES, "primary")


def _text(row: Dict[str, Any], column: str) -> str:
    return clean_text(row.get(column)) or ""


def _billing(row: Dict[str, Any]):
    if not (clean_text(row.get("billing_street")) or clean_text(row.get("billing_city"))):
        return None
    return {
        "billingAddress": {
            "street": _text(row, "billing_street"),
            "city": _text(row, "billing_city"),
            "province": _text(row, "billing_province"),
            "postalCode": _text(row, "billing_postal_code"),
        },
        "preferredPaymentMethod": _text(row, "preferred_payment_method"),
        "insurancePrimary": to_bool(row.get("insurance_primary"), default=True),
        "specialInstructions": _text(row, "special_instructions"),
    }


def transform_relationship(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": to_int(row.get("relationship_id")),
        "clientId": clean_text(row.get("client_id")),
        "clinicName": clean_text(row.get("clinic_name")),
        "relationshipType": normalize_relationship_type(row.get("relationship_type")),
        "startDate": parse_date(row.get("start_date")) or utcnow(),
        "endDate": parse_date(row.get("end_date")),
        "isActive": to_bool(row.get("is_active"), default=True),
        "isPrimary": to_bool(row.get("is_primary")),
        "permissions": {
            "canSchedule": to_bool(row.get("can_schedule"), default=True),
            "canViewRecords": to_bool(row.get("can_view_records"), default=True),
            "canReceiveBills": to_bool(row.get("can_receive_bills"), default=True),
            "canAuthorizeInsurance": to_bool(row.get("can_authorize_insurance")),
        },
        "details": {
            "referredBy": _text(row, "referred_by"),
            "referralDate": parse_date(row.get("referral_date")),
            "referralReason": _text(row, "referral_reason"),
            "notes": _text(row, "notes"),
            "preferredPractitioner": _text(row, "preferred_practitioner"),
            "preferredServices": [],
        },
        "billing": _billing(row),
        "stats": {
            "totalAppointments": to_int(row.get("total_appointments"), 0),
            "completedAppointments": to_int(row.get("completed_appointments"), 0),
            "cancelledAppointments": to_int(row.get("cancelled_appointments"), 0),
            "noShowAppointments": to_int(row.get("no_show_appointments"), 0),
            "lastAppointmentDate": parse_date(row.get("last_appointment_date")),
            "totalAmountBilled": to_float(row.get("total_amount_billed"), 0.0),
            "totalAmountPaid": to_float(row.get("total_amount_paid"), 0.0),
            "averageAppointmentDuration": to_int(row.get("average_appointment_duration")) or 60,
        },
        "createdAt": parse_date(row.get("created_date")) or utcnow(),
        "modifiedAt": parse_date(row.get("modified_date")),
        "createdBy": _text(row, "created_by"),
        "modifiedBy": _text(row, "modified_by"),
    }


def validate_relationship(doc: Dict[str, Any]) -> bool:
    if doc.get("id") and doc.get("clientId") and doc.get("clinicName"):
        return True
    logger.warning(f"Invalid relationship {doc.get('id')}: missing id, client or clinic")
    return False


class ClientClinicRelationshipMigration(BaseMigration):
    """sb_client_and_clinic -> clientclinicrelationships; skips existing ids."""

    table_name = "sb_client_and_clinic"
    collection_name = "clientclinicrelationships"
    natural_key = "id"
    page_size = 1000
    source_query = SourceQuery(
        table="sb_client_and_clinic",
        columns=RELATIONSHIP_COLUMNS,
        where="relationship_id IS NOT NULL AND client_id IS NOT NULL AND clinic_name IS NOT NULL",
        predicate=not_null("relationship_id", "client_id", "clinic_name"),
        order_by="relationship_id",
    )
    indexes = (
        ("id", {"unique": True}),
        ([("clientId", 1), ("clinicName", 1)], {}),
        ([("clinicName", 1), ("isActive", 1)], {}),
        ([("clientId", 1), ("isPrimary", 1)], {}),
    )
    required_fields = ("id", "clientId", "clinicName")
    date_order = ("startDate", "endDate")
    statistics_filters = {
        "active": {"isActive": True},
        "primary": {"isPrimary": True},
    }

    def filter_rows(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = self.data_filter.filter_records_by_clinic(rows, clinic_field="clinic_name")
        self.data_filter.log_filter_stats(len(rows), len(kept), "Client-clinic relationships")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_relationship(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_relationship(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_relationship,
            validate=validate_relationship,
            row_filter=self.filter_rows,
            describe=lambda row: row.get("relationship_id"),
            write_mode=WriteMode.SKIP_EXISTING,
            page_size=self.page_size,
        )
        return await self.run_pipeline(runner)
