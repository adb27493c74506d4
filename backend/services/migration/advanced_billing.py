"""
Clinic Back Office - Advanced Billing Migration

Migrates active advanced_billing rows into `advancedbillings`.

Unlike the other migrations this one always reconciles: billing records
already present (by billingId) are updated in place and new ones are
inserted, so re-running picks up changed legacy rows.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery
from .transforms import clean_text, parse_date, to_bool, to_int

logger = logging.getLogger(__name__)


class BillingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    SUSPENDED = "SUSPENDED"


def map_billing_status(value: Any) -> str:
    status = (clean_text(value) or "").upper()
    try:
        return BillingStatus(status).value
    except ValueError:
        return BillingStatus.INACTIVE.value


def transform_billing(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "billingId": to_int(row.get("advanced_billing_id")),
        "clientId": clean_text(row.get("client_id")) or "",
        "clientKey": to_int(row.get("client_key")),
        "startDate": parse_date(row.get("start_date")),
        "endDate": parse_date(row.get("end_date")),
        "productKey": to_int(row.get("product_key")),
        "billDate": parse_date(row.get("bill_date")),
        "isActive": to_bool(row.get("is_active")),
        "status": map_billing_status(row.get("status")),
        "clinicName": clean_text(row.get("clinic_name")) or "",
        "dateCreated": parse_date(row.get("date_created")),
        "dateModified": parse_date(row.get("date_modified")),
    }


def is_billable_row(row: Dict[str, Any]) -> bool:
    """Row form of `is_active = 1 AND status != 'DELETED'` (a NULL status fails)."""
    status = clean_text(row.get("status"))
    return to_bool(row.get("is_active")) and status is not None and status.upper() != "DELETED"


def has_billing_essentials(row: Dict[str, Any]) -> bool:
    """Dates, client and a positive billing id must all be present."""
    if not (row.get("start_date") and row.get("end_date") and row.get("bill_date")):
        return False
    if not clean_text(row.get("client_id")):
        return False
    return (to_int(row.get("advanced_billing_id")) or 0) > 0


def validate_billing(doc: Dict[str, Any]) -> bool:
    billing_id = doc.get("billingId")
    if not (doc.get("startDate") and doc.get("endDate") and doc.get("billDate")):
        logger.warning(f"Invalid billing {billing_id}: unparseable dates")
        return False
    return True


class AdvancedBillingMigration(BaseMigration):
    """advanced_billing -> advancedbillings; inserts new and updates existing."""

    table_name = "advanced_billing"
    collection_name = "advancedbillings"
    natural_key = "billingId"
    page_size = 100
    source_query = SourceQuery(
        table="advanced_billing",
        columns=(
            "id", "advanced_billing_id", "client_id", "client_key", "start_date",
            "end_date", "product_key", "bill_date", "is_active", "status",
            "clinic_name", "date_created", "date_modified",
        ),
        where="is_active = 1 AND status != 'DELETED'",
        predicate=is_billable_row,
        order_by="id",
    )
    indexes = (
        ("billingId", {"unique": True}),
        ([("clientId", 1), ("isActive", 1)], {}),
        ([("clinicName", 1), ("isActive", 1)], {}),
        ([("status", 1), ("isActive", 1)], {}),
        ([("billDate", 1), ("isActive", 1)], {}),
        ([("startDate", 1), ("endDate", 1)], {}),
        ("productKey", {}),
        ([("clientId", 1), ("status", 1), ("isActive", 1)], {}),
        ([("clinicName", 1), ("status", 1), ("isActive", 1)], {}),
        ([("isActive", 1), ("status", 1), ("billDate", 1)], {}),
    )
    required_fields = ("billingId", "clientId", "startDate", "endDate", "billDate")
    date_order = ("startDate", "endDate")
    statistics_filters = {"active": {"isActive": True}}

    def apply_business_rules(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        by_clinic = self.data_filter.filter_records_by_clinic(rows, clinic_field="clinic_name")
        by_product = self.data_filter.filter_orders_by_products(by_clinic, product_field="product_key")
        kept = [row for row in by_product if has_billing_essentials(row)]

        if len(by_clinic) != len(rows):
            logger.info(f"Filtered out {len(rows) - len(by_clinic)} billing records by clinic rules")
        if len(by_product) != len(by_clinic):
            logger.info(f"Filtered out {len(by_clinic) - len(by_product)} billing records by product rules")
        if len(kept) != len(by_product):
            logger.info(f"Filtered out {len(by_product) - len(kept)} billing records missing dates or ids")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_billing(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_billing(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_billing,
            validate=validate_billing,
            row_filter=self.apply_business_rules,
            describe=lambda row: row.get("advanced_billing_id"),
            write_mode=WriteMode.UPSERT,
            page_size=self.page_size,
            touch_field="dateModified",
        )
        return await self.run_pipeline(runner)

    async def get_migration_summary(self) -> Dict[str, Any]:
        total, active, statuses, clients, clinics = await asyncio.gather(
            self.collection.count_documents({}),
            self.collection.count_documents({"isActive": True}),
            self.get_distribution("status"),
            self.get_distribution("clientId", 10),
            self.get_distribution("clinicName", 10),
        )
        return {
            "total_records": total,
            "active_records": active,
            "status_distribution": [{"status": r["value"], "count": r["count"]} for r in statuses],
            "top_clients": [{"client_id": r["value"], "count": r["count"]} for r in clients],
            "top_clinics": [{"clinic": r["value"], "count": r["count"]} for r in clinics],
        }
