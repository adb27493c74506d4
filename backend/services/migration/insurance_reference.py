"""
Clinic Back Office - Insurance Reference Migration

Migrates the three small insurance lookup tables:

    sb_insurance_frequency      -> insurancefrequencies   (frequencyKey)
    sb_insurance_policy_holder  -> insurancepolicyholders (policyHolderKey)
    sb_insurance_cob            -> insurancecobs          (cobKey)

Each row carries a display name which is also mapped onto a fixed type.
Rows are upserted by key, so re-running refreshes names and types while
keeping the original dateCreated.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence, Tuple

from pymongo.errors import PyMongoError

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery
from .transforms import clean_text, normalize_choice, to_int, utcnow

logger = logging.getLogger(__name__)


class FrequencyType(str, Enum):
    SELECT = "SELECT"
    YEARLY = "YEARLY"
    ROLLING = "ROLLING"
    NUMERIC = "NUMERIC"


class PolicyHolderType(str, Enum):
    NONE = "NONE"
    SELF = "SELF"
    SPOUSE = "SPOUSE"
    PARENT = "PARENT"
    CHILD = "CHILD"
    OTHER = "OTHER"


class COBStatus(str, Enum):
    YES = "YES"
    NO = "NO"


def map_frequency_type(name: Any) -> str:
    return normalize_choice(
        name,
        (
            (FrequencyType.SELECT.value, ("select",)),
            (FrequencyType.YEARLY.value, ("yearly", "annual")),
            (FrequencyType.ROLLING.value, ("rolling", "continuous")),
        ),
        FrequencyType.NUMERIC.value,
    )


def map_policy_holder_type(name: Any) -> str:
    if not clean_text(name):
        return PolicyHolderType.NONE.value
    return normalize_choice(
        name,
        (
            (PolicyHolderType.NONE.value, ("none",)),
            (PolicyHolderType.SELF.value, ("self", "patient")),
            (PolicyHolderType.SPOUSE.value, ("spouse", "partner")),
            (PolicyHolderType.PARENT.value, ("parent", "mother", "father")),
            (PolicyHolderType.CHILD.value, ("child", "son", "daughter")),
        ),
        PolicyHolderType.OTHER.value,
    )


def map_cob_status(name: Any) -> str:
    text = (clean_text(name) or "").lower()
    if "yes" in text or "true" in text or text == "1":
        return COBStatus.YES.value
    return COBStatus.NO.value


@dataclass(frozen=True)
class ReferenceTable:
    """One legacy lookup table and the collection it lands in."""
    table: str
    collection_name: str
    key_field: str
    name_field: str
    type_field: str
    mapper: Callable[[Any], str]

    @property
    def key_column(self) -> str:
        return f"{self.table}_key"

    @property
    def name_column(self) -> str:
        return f"{self.table}_name"

    @property
    def query(self) -> SourceQuery:
        return SourceQuery(
            table=self.table,
            columns=(self.key_column, self.name_column),
            order_by=self.key_column,
        )

    @property
    def indexes(self) -> Sequence[Tuple[Any, Dict[str, Any]]]:
        return (
            (self.key_field, {"unique": True}),
            (self.type_field, {}),
            (self.name_field, {}),
        )

    def transform(self, row: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        name = row.get(self.name_column)
        return {
            self.key_field: to_int(row.get(self.key_column)),
            self.name_field: clean_text(name) or "",
            self.type_field: self.mapper(name),
            "dateCreated": now,
            "dateModified": now,
        }

    def validate(self, doc: Dict[str, Any]) -> bool:
        if doc.get(self.key_field) is None:
            logger.warning(f"Invalid {self.table} row: missing {self.key_field}")
            return False
        return True


REFERENCE_TABLES = (
    ReferenceTable(
        "sb_insurance_frequency", "insurancefrequencies",
        "frequencyKey", "frequencyName", "frequencyType", map_frequency_type,
    ),
    ReferenceTable(
        "sb_insurance_policy_holder", "insurancepolicyholders",
        "policyHolderKey", "policyHolderName", "policyHolderType", map_policy_holder_type,
    ),
    ReferenceTable(
        "sb_insurance_cob", "insurancecobs",
        "cobKey", "cobName", "cobStatus", map_cob_status,
    ),
)


class InsuranceReferenceMigration(BaseMigration):
    """Frequency, policy holder and COB lookups; upserted by key."""

    table_name = "insurance_reference"
    collection_name = ""
    tables: Sequence[ReferenceTable] = REFERENCE_TABLES

    def _collection(self, table: ReferenceTable):
        return None if self.db is None else self.db[table.collection_name]

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Transform a row from any of the lookup tables, picked by its key column."""
        for table in self.tables:
            if table.key_column in row:
                return table.transform(row)
        raise ValueError(f"Row does not belong to an insurance reference table: {sorted(row)}")

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        for table in self.tables:
            if table.key_field in doc:
                return table.validate(doc)
        return False

    async def get_sample_records(self, limit: int = 5) -> List[Dict[str, Any]]:
        samples = []
        for table in self.tables:
            rows = await self.source.fetch(table.query, table.query.sample_sql(limit))
            samples.extend(self.transform_record(row) for row in rows)
        return samples

    async def migrate(self) -> MigrationResult:
        runners = [
            self.build_runner(
                name=table.table,
                collection=self._collection(table),
                query=table.query,
                natural_key=table.key_field,
                transform=table.transform,
                validate=table.validate,
                describe=lambda row, column=table.key_column: row.get(column),
                write_mode=WriteMode.UPSERT,
                touch_field="dateModified",
                preserve_fields=("dateCreated",),
            )
            for table in self.tables
        ]
        return await self.run_pipeline(*runners)

    async def create_indexes(self) -> None:
        for table in self.tables:
            collection = self._collection(table)
            for keys, kwargs in table.indexes:
                await collection.create_index(keys, **kwargs)
            logger.info(f"Created {len(table.indexes)} indexes on {table.collection_name}")

    async def validate_migration(self) -> Dict[str, Any]:
        """Per-collection totals and documents missing key, name or type."""
        checks = {}
        for table in self.tables:
            collection = self._collection(table)
            missing = {"$or": [{f: {"$exists": False}} for f in (table.key_field, table.name_field, table.type_field)]}
            checks[f"{table.collection_name}_total"] = collection.count_documents({})
            checks[f"{table.collection_name}_invalid"] = collection.count_documents(missing)

        try:
            values = await asyncio.gather(*checks.values())
        except PyMongoError as e:
            logger.warning(f"Could not validate insurance reference data: {e}")
            return {}

        report = dict(zip(checks.keys(), values))
        invalid = {name: value for name, value in report.items() if name.endswith("_invalid") and value}
        for name, value in invalid.items():
            logger.warning(f"Validation {name} = {value}")
        if not invalid:
            logger.info("All insurance reference data passed validation")
        return report

    async def get_migration_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        issues: List[str] = []
        for table in self.tables:
            collection = self._collection(table)
            total = await collection.count_documents({})
            rows = await collection.aggregate([
                {"$group": {"_id": f"${table.type_field}", "count": {"$sum": 1}}},
                {"$sort": {"count": -1}},
            ]).to_list(length=None)
            summary[table.collection_name] = {
                "total": total,
                "distribution": [{"type": r["_id"], "count": r["count"]} for r in rows],
            }
            if total == 0:
                issues.append(f"No {table.collection_name} records found")
        summary["integrity"] = {"has_valid_data": not issues, "issues": issues}
        return summary
