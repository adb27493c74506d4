"""
Clinic Back Office - Appointment Migration

Migrates the Appointments table (~150k rows) into `appointments`, paging
through the source 5000 rows at a time.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery
from .transforms import clean_text, parse_date, to_bool, to_int, utcnow

logger = logging.getLogger(__name__)

APPOINTMENT_COLUMNS = (
    "ID", "Type", "StartDate", "EndDate", "AllDay", "Subject", "Location",
    "Description", "Status", "Label", "ResourceID", "ReminderInfo",
    "RecurrenceInfo", "Duration", "ClientID", "ProductKey", "BillDate",
    "ReadyToBill", "IsActive", "ClinicName", "InvoiceDate", "AdvancedBilling",
    "shadowID", "AdvancedBillingId", "GroupID",
)

EARLIEST_APPOINTMENT = datetime(2010, 1, 1)
MAX_DURATION_MINUTES = 1440
DEFAULT_DURATION_MINUTES = 30


def latest_appointment_date() -> datetime:
    now = utcnow()
    return now.replace(year=now.year + 5, day=min(now.day, 28))


def calculate_duration(row: Dict[str, Any]) -> int:
    """Minutes; Duration column first, then the date span, then 30."""
    duration = to_int(row.get("Duration"))
    if duration and duration > 0:
        return duration

    start = parse_date(row.get("StartDate"))
    end = parse_date(row.get("EndDate"))
    if start and end:
        return round((end - start).total_seconds() / 60)

    return DEFAULT_DURATION_MINUTES


def transform_appointment(row: Dict[str, Any]) -> Dict[str, Any]:
    client_key = to_int(row.get("ClientID"))
    group_id = to_int(row.get("GroupID"))
    now = utcnow()

    return {
        "appointmentId": to_int(row.get("ID")),
        "type": to_int(row.get("Type"), 0),
        "startDate": parse_date(row.get("StartDate")),
        "endDate": parse_date(row.get("EndDate")),
        "allDay": to_bool(row.get("AllDay")),
        "subject": clean_text(row.get("Subject")) or "",
        "location": clean_text(row.get("Location")),
        "description": clean_text(row.get("Description")),
        "status": to_int(row.get("Status"), 0),
        "label": to_int(row.get("Label"), 0),
        "resourceId": to_int(row.get("ResourceID")),
        "reminderInfo": clean_text(row.get("ReminderInfo")),
        "recurrenceInfo": clean_text(row.get("RecurrenceInfo")),
        "duration": calculate_duration(row),
        "clientId": str(client_key) if client_key else None,
        "clientKey": client_key,
        "productKey": to_int(row.get("ProductKey")),
        "billDate": parse_date(row.get("BillDate")),
        "invoiceDate": parse_date(row.get("InvoiceDate")),
        "readyToBill": to_bool(row.get("ReadyToBill")),
        "advancedBilling": to_bool(row.get("AdvancedBilling")),
        "advancedBillingId": to_int(row.get("AdvancedBillingId")),
        "clinicName": clean_text(row.get("ClinicName")) or "",
        "isActive": to_bool(row.get("IsActive"), default=True),
        "shadowId": to_int(row.get("shadowID")),
        "groupId": str(group_id) if group_id else None,
        "dateCreated": now,
        "dateModified": now,
    }


def validate_appointment(doc: Dict[str, Any]) -> bool:
    appointment_id = doc.get("appointmentId")
    problem = None
    if not appointment_id:
        problem = "invalid appointmentId"
    elif not doc.get("startDate"):
        problem = "invalid startDate"
    elif not doc.get("endDate"):
        problem = "invalid endDate"
    elif not doc.get("subject"):
        problem = "missing subject"
    elif not doc.get("resourceId"):
        problem = "invalid resourceId"
    elif not doc.get("clinicName"):
        problem = "missing clinicName"
    elif doc["endDate"] <= doc["startDate"]:
        problem = "end date is not after start date"
    elif not 0 <= doc.get("duration", 0) <= MAX_DURATION_MINUTES:
        problem = f"duration {doc.get('duration')} outside 0-{MAX_DURATION_MINUTES} minutes"

    if problem:
        logger.warning(f"Invalid appointment {appointment_id}: {problem}")
        return False
    return True


class AppointmentMigration(BaseMigration):
    """Appointments -> appointments; skips appointmentIds already present."""

    table_name = "Appointments"
    collection_name = "appointments"
    natural_key = "appointmentId"
    page_size = 5000
    source_query = SourceQuery(table="Appointments", columns=APPOINTMENT_COLUMNS, order_by="ID")
    indexes = (
        ("appointmentId", {"unique": True, "background": True}),
        ([("clinicName", 1), ("startDate", 1)], {"background": True}),
        ([("clientId", 1), ("startDate", 1)], {"background": True}),
        ([("resourceId", 1), ("startDate", 1)], {"background": True}),
        ([("startDate", 1), ("endDate", 1)], {"background": True}),
        ([("billDate", 1), ("readyToBill", 1)], {"background": True}),
        ([("status", 1), ("isActive", 1)], {"background": True}),
    )
    required_fields = ("appointmentId", "startDate", "endDate", "clinicName")
    date_order = ("startDate", "endDate")
    statistics_filters = {
        "active": {"isActive": True},
        "completed": {"status": 1},
        "ready_to_bill": {"readyToBill": True, "invoiceDate": None},
    }

    def filter_documents(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = self.data_filter.apply_visio_filters(
            docs,
            text_fields=("subject",),
            date_field="startDate",
            earliest=EARLIEST_APPOINTMENT,
            latest=latest_appointment_date(),
            clinic_field="clinicName",
        )
        kept = [d for d in kept if d.get("duration", 0) <= MAX_DURATION_MINUTES]
        self.data_filter.log_filter_stats(len(docs), len(kept), "Appointments")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_appointment(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_appointment(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_appointment,
            validate=validate_appointment,
            doc_filter=self.filter_documents,
            describe=lambda row: row.get("ID"),
            write_mode=WriteMode.SKIP_EXISTING,
            page_size=self.page_size,
        )
        return await self.run_pipeline(runner)

    async def get_clinic_distribution(self, limit: int = 10) -> List[Dict[str, Any]]:
        rows = await self.get_distribution("clinicName", limit)
        return [{"clinic": row["value"], "appointments": row["count"]} for row in rows]

    async def get_statistics(self) -> Dict[str, int]:
        stats = await super().get_statistics()
        logger.info(f"Top appointment clinics: {await self.get_clinic_distribution()}")
        return stats
