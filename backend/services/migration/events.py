"""
Clinic Back Office - Event Migration

Migrates the legacy calendar `events` table into `events` in one bulk read.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery
from .transforms import clean_text, parse_date, to_int, utcnow

logger = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "event_id", "event_parent_id", "user_id", "category_id", "event_title",
    "event_desc", "event_date", "event_time", "event_time_end",
    "event_location", "event_cost", "event_url", "event_is_public",
    "event_is_approved", "custom_TextBox1", "custom_TextBox2",
    "custom_TextBox3", "custom_TextArea1", "custom_TextArea2",
    "custom_TextArea3", "custom_CheckBox1", "custom_CheckBox2",
    "custom_CheckBox3", "sb_client_id", "sb_client_full_name",
    "sb_client_clinic_name", "event_date_add", "event_user_add",
)

EARLIEST_EVENT = datetime(2000, 1, 1)


def latest_event_date() -> datetime:
    now = utcnow()
    return now.replace(year=now.year + 10, day=min(now.day, 28))


def flag(value: Any) -> bool:
    """Legacy 0/1 flag; anything but 1 is False."""
    return to_int(value) == 1


def clean_url(value: Any) -> Optional[str]:
    url = clean_text(value)
    if not url:
        return None
    if not url.startswith(("http://", "https://")):
        return f"http://{url}"
    return url


def transform_event(row: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    doc = {
        "eventId": to_int(row.get("event_id")),
        "parentEventId": to_int(row.get("event_parent_id")) or None,
        "userId": to_int(row.get("user_id")) or None,
        "categoryId": to_int(row.get("category_id")) or None,
        "title": clean_text(row.get("event_title")) or "",
        "description": clean_text(row.get("event_desc")),
        "eventDate": parse_date(row.get("event_date")),
        "eventTime": parse_date(row.get("event_time")),
        "eventTimeEnd": parse_date(row.get("event_time_end")),
        "location": clean_text(row.get("event_location")),
        "cost": clean_text(row.get("event_cost")),
        "url": clean_url(row.get("event_url")),
        "isPublic": flag(row.get("event_is_public")),
        "isApproved": flag(row.get("event_is_approved")),
        "clientId": clean_text(row.get("sb_client_id")),
        "clientFullName": clean_text(row.get("sb_client_full_name")),
        "clientClinicName": clean_text(row.get("sb_client_clinic_name")),
        "dateAdded": parse_date(row.get("event_date_add")) or now,
        "userAdded": to_int(row.get("event_user_add")) or None,
        "dateCreated": now,
        "dateModified": now,
    }
    for n in (1, 2, 3):
        doc[f"customTextBox{n}"] = clean_text(row.get(f"custom_TextBox{n}"))
        doc[f"customTextArea{n}"] = clean_text(row.get(f"custom_TextArea{n}"))
        doc[f"customCheckBox{n}"] = flag(row.get(f"custom_CheckBox{n}"))
    return doc


def validate_event(doc: Dict[str, Any]) -> bool:
    event_id = doc.get("eventId")
    if not event_id:
        logger.warning(f"Invalid eventId: {event_id}")
        return False
    if not doc.get("title"):
        logger.warning(f"Missing title for event: {event_id}")
        return False
    if not doc.get("eventDate"):
        logger.warning(f"Invalid eventDate for event: {event_id}")
        return False

    start, end = doc.get("eventTime"), doc.get("eventTimeEnd")
    if start and end and end <= start:
        # kept; only reported
        logger.warning(f"Invalid time range for event: {event_id}")
    return True


class EventMigration(BaseMigration):
    """events -> events; skips eventIds already present."""

    table_name = "events"
    collection_name = "events"
    natural_key = "eventId"
    source_query = SourceQuery(table="events", columns=EVENT_COLUMNS, order_by="event_id")
    indexes = (
        ("eventId", {"unique": True, "background": True}),
        ([("eventDate", 1), ("isPublic", 1), ("isApproved", 1)], {"background": True}),
        ([("clientId", 1), ("eventDate", 1)], {"background": True}),
        ([("categoryId", 1), ("eventDate", 1)], {"background": True}),
        ([("clientClinicName", 1), ("eventDate", 1)], {"background": True}),
    )
    required_fields = ("eventId", "title", "eventDate")
    statistics_filters = {
        "public": {"isPublic": True},
        "approved": {"isApproved": True},
        "with_clients": {"clientId": {"$nin": [None, ""]}},
    }

    def filter_documents(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        # Events without a client clinic are clinic-wide and kept
        kept = self.data_filter.apply_visio_filters(
            docs,
            text_fields=("title",),
            date_field="eventDate",
            earliest=EARLIEST_EVENT,
            latest=latest_event_date(),
            clinic_field="clientClinicName",
            require_clinic=False,
        )
        self.data_filter.log_filter_stats(len(docs), len(kept), "Events")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_event(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_event(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_event,
            validate=validate_event,
            doc_filter=self.filter_documents,
            describe=lambda row: row.get("event_id"),
            write_mode=WriteMode.SKIP_EXISTING,
        )
        return await self.run_pipeline(runner)
