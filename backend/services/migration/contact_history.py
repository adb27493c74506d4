"""
Clinic Back Office - Contact History Migration

Migrates sb_contact_history (calls, emails, visits, notes) into
`contacthistories`. Free-text type, direction and priority columns are
normalised onto fixed vocabularies.
"""

import logging
from typing import Any, Dict, List, Optional

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery, not_null
from .transforms import clean_text, normalize_choice, parse_date, to_bool, to_int

logger = logging.getLogger(__name__)

CONTACT_COLUMNS = (
    "contact_id", "client_id", "clinic_name", "contact_type",
    "contact_direction", "subject", "description", "contact_date",
    "duration_minutes", "outcome", "follow_up_required", "follow_up_date",
    "priority", "category", "created_by", "created_date", "modified_date",
    "is_active", "phone_number", "email_address", "appointment_id",
    "insurance_company", "claim_number", "authorization_number",
)

CONTACT_TYPES = (
    ("call", ("call", "phone")),
    ("email", ("email", "mail")),
    ("sms", ("sms", "text")),
    ("visit", ("visit", "in-person")),
    ("note", ("note", "memo")),
    ("appointment", ("appointment", "appt")),
)

# "internal" and "outbound" both contain "in"; order matters
DIRECTIONS = (
    ("internal", ("internal",)),
    ("outbound", ("out",)),
    ("inbound", ("in",)),
)

PRIORITIES = (
    ("low", ("low",)),
    ("high", ("high",)),
    ("urgent", ("urgent", "critical")),
)


def normalize_contact_type(value: Any) -> Optional[str]:
    """None when the legacy row carries no type at all."""
    if not clean_text(value):
        return None
    return normalize_choice(value, CONTACT_TYPES, "other")


def normalize_direction(value: Any) -> str:
    return normalize_choice(value, DIRECTIONS, "internal")


def normalize_priority(value: Any) -> str:
    return normalize_choice(value, PRIORITIES, "medium")


def transform_contact(row: Dict[str, Any]) -> Dict[str, Any]:
    contact_type = normalize_contact_type(row.get("contact_type"))
    contact_date = parse_date(row.get("contact_date"))
    insurance_company = clean_text(row.get("insurance_company"))

    return {
        "id": to_int(row.get("contact_id")),
        "clientId": clean_text(row.get("client_id")),
        "clinicName": clean_text(row.get("clinic_name")) or "Unknown",
        "contactType": contact_type,
        "direction": normalize_direction(row.get("contact_direction")),
        "subject": clean_text(row.get("subject")) or "",
        "description": clean_text(row.get("description")) or "",
        "contactDate": contact_date,
        "duration": to_int(row.get("duration_minutes")) or None,
        "outcome": clean_text(row.get("outcome")) or "",
        "followUpRequired": to_bool(row.get("follow_up_required")),
        "followUpDate": parse_date(row.get("follow_up_date")),
        "priority": normalize_priority(row.get("priority")),
        "category": clean_text(row.get("category")) or "",
        "createdBy": clean_text(row.get("created_by")) or "",
        "createdAt": parse_date(row.get("created_date")) or contact_date,
        "modifiedAt": parse_date(row.get("modified_date")),
        "isActive": to_bool(row.get("is_active"), default=True),
        "communication": {
            "method": contact_type or "other",
            "phoneNumber": clean_text(row.get("phone_number")),
            "emailAddress": clean_text(row.get("email_address")),
        },
        "appointmentId": to_int(row.get("appointment_id")) or None,
        "insuranceContext": {
            "insuranceCompany": insurance_company,
            "claimNumber": clean_text(row.get("claim_number")),
            "authorizationNumber": clean_text(row.get("authorization_number")),
        } if insurance_company else None,
    }


def validate_contact(doc: Dict[str, Any]) -> bool:
    if doc.get("id") and doc.get("contactDate") and doc.get("contactType"):
        return True
    logger.warning(f"Invalid contact record: {doc.get('id')} - missing id, date or type")
    return False


class ContactHistoryMigration(BaseMigration):
    """sb_contact_history -> contacthistories; skips existing ids."""

    table_name = "sb_contact_history"
    collection_name = "contacthistories"
    natural_key = "id"
    page_size = 1000
    source_query = SourceQuery(
        table="sb_contact_history",
        columns=CONTACT_COLUMNS,
        where="contact_id IS NOT NULL AND contact_date IS NOT NULL",
        predicate=not_null("contact_id", "contact_date"),
        order_by="contact_id",
    )
    indexes = (
        ("id", {"unique": True}),
        ([("clientId", 1), ("contactDate", -1)], {}),
        ([("clinicName", 1), ("contactDate", -1)], {}),
        ([("contactType", 1), ("contactDate", -1)], {}),
        ([("followUpRequired", 1), ("followUpDate", 1)], {}),
    )
    required_fields = ("id", "contactDate", "contactType")
    statistics_filters = {
        "active": {"isActive": True},
        "follow_up_required": {"followUpRequired": True},
        "with_insurance_context": {"insuranceContext": {"$ne": None}},
    }

    def filter_rows(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = self.data_filter.filter_records_by_clinic(rows, clinic_field="clinic_name")
        self.data_filter.log_filter_stats(len(rows), len(kept), "Contact history")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_contact(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_contact(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_contact,
            validate=validate_contact,
            row_filter=self.filter_rows,
            describe=lambda row: row.get("contact_id"),
            write_mode=WriteMode.SKIP_EXISTING,
            page_size=self.page_size,
        )
        return await self.run_pipeline(runner)
