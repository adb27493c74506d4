"""
Clinic Back Office - Migration Engine

This module implements the shared batch engine used by every legacy table
migration.

A migration run:
1. Counts and fetches rows from the legacy source (paged or in one bulk read)
2. Applies retention filters to the raw rows
3. Transforms each row into a nested MongoDB document
4. Applies document-level filters and validates each document
5. Looks up existing natural keys in the destination collection
6. Inserts new documents and skips or updates existing ones, in batches
7. Creates the collection's indexes and runs post-migration checks

Batches and pages are processed strictly one after another. A run can be
executed in dry-run mode, which performs every read, filter, transform and
validation step and reports would-be counts without writing.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional,
    Sequence, Set, Tuple, Union
)

from pymongo import UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError

from . import config
from .data_filter import DataFilter, get_data_filter
from .sources import LegacyQueryExecutor, SourceQuery
from .transforms import utcnow

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
RecordsFilter = Callable[[List[Record]], List[Record]]

DUPLICATE_KEY_ERROR = 11000


class WriteMode(str, Enum):
    """How documents whose natural key already exists are handled."""
    SKIP_EXISTING = "skip_existing"  # skip when skip_existing, else update
    UPSERT = "upsert"                # always insert new + update existing


@dataclass(frozen=True)
class MigrationOptions:
    """Options for one migration run."""
    batch_size: int = 1000
    skip_existing: bool = True
    validate_data: bool = True
    dry_run: bool = False
    # When True a record whose transform raises is rejected on its own
    # instead of failing the whole batch.
    isolate_record_errors: bool = False

    def merged(self, **overrides: Any) -> "MigrationOptions":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def get_default_options() -> MigrationOptions:
    """Options taken from the environment."""
    return MigrationOptions(
        batch_size=config.MIGRATION_BATCH_SIZE,
        skip_existing=config.MIGRATION_SKIP_EXISTING,
        isolate_record_errors=config.MIGRATION_ISOLATE_RECORD_ERRORS,
    )


@dataclass(frozen=True)
class MigrationResult:
    """Result of a single migration run."""
    success: bool
    total_records: int
    migrated_records: int
    skipped_records: int
    errors: Tuple[str, ...]
    duration: int  # milliseconds
    table_name: str

    inserted_records: int = 0
    updated_records: int = 0
    rejected_records: int = 0
    dry_run: bool = False

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "table_name": self.table_name,
            "total_records": self.total_records,
            "migrated_records": self.migrated_records,
            "skipped_records": self.skipped_records,
            "inserted_records": self.inserted_records,
            "updated_records": self.updated_records,
            "rejected_records": self.rejected_records,
            "duration_ms": self.duration,
            "dry_run": self.dry_run,
            "errors": list(self.errors),
            "error_count": self.error_count,
        }


class ValidationPartition(NamedTuple):
    valid: List[Record]
    invalid: List[Record]


# =============================================================================
# BATCH HELPERS
# =============================================================================

async def process_batch(
    records: Sequence[Any],
    processor: Callable[[List[Any]], Union[List[Any], Awaitable[List[Any]]]],
    batch_size: int,
    label: str = "batch",
) -> List[Any]:
    """
    Run `processor` over fixed-size chunks of `records`, one chunk at a time,
    and concatenate what it returns. A processor error is logged and re-raised;
    the remaining chunks are not attempted.
    """
    if not records:
        return []

    results: List[Any] = []
    total_batches = (len(records) + batch_size - 1) // batch_size

    for index, start in enumerate(range(0, len(records), batch_size), start=1):
        chunk = list(records[start:start + batch_size])
        try:
            output = processor(chunk)
            if inspect.isawaitable(output):
                output = await output
        except Exception as e:
            logger.error(f"Error processing {label} {index}/{total_batches}: {e}")
            raise
        results.extend(output or [])
        logger.info(f"Processed {label} {index}/{total_batches} ({len(chunk)} records)")

    return results


def validate_records(
    records: Iterable[Record],
    validator: Callable[[Record], bool],
) -> ValidationPartition:
    valid: List[Record] = []
    invalid: List[Record] = []
    for record in records:
        (valid if validator(record) else invalid).append(record)
    return ValidationPartition(valid, invalid)


def transform_records(
    records: Iterable[Record],
    transformer: Callable[[Record], Record],
) -> List[Record]:
    return [transformer(record) for record in records]


def log_progress(table_name: str, processed: int, total: int, errors: int = 0) -> None:
    percent = (processed / total * 100) if total else 100.0
    logger.info(
        f"Migration Progress [{table_name}]: {processed}/{total} "
        f"({percent:.1f}%) - Errors: {errors}"
    )


# =============================================================================
# BATCH RUNNER
# =============================================================================

@dataclass
class RunnerOutcome:
    """
    Counters accumulated by a BatchRunner. `errors` keeps the first
    MAX_RESULT_ERRORS messages; `error_count` counts all of them.
    """
    total: int = 0
    inserted: int = 0
    updated: int = 0
    skipped_existing: int = 0
    duplicates: int = 0
    rejected: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def migrated(self) -> int:
        return self.inserted + self.updated

    def record_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.errors) < config.MAX_RESULT_ERRORS:
            self.errors.append(message)

    def add(self, other: "RunnerOutcome") -> None:
        self.total += other.total
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped_existing += other.skipped_existing
        self.duplicates += other.duplicates
        self.rejected += other.rejected
        self.error_count += other.error_count
        room = config.MAX_RESULT_ERRORS - len(self.errors)
        self.errors.extend(other.errors[:max(room, 0)])


class BatchRunner:
    """
    Fetch -> filter -> transform -> filter -> validate -> dedupe -> write loop
    for one legacy table.

    Every step is passed in explicitly so a migration's behaviour is visible
    where the runner is built:

        runner = BatchRunner(
            name="sb_clients",
            source=source,
            collection=db["clients"],
            query=SourceQuery("sb_clients", order_by="sb_clients_id"),
            natural_key="clientId",
            transform=transform_client,
            validate=validate_client,
            row_filter=filter_clients,
            options=options,
            page_size=1000,
        )
        outcome = await runner.run()

    `page_size=None` reads the whole table with one query.
    """

    def __init__(
        self,
        name: str,
        source: LegacyQueryExecutor,
        collection,
        query: SourceQuery,
        natural_key: str,
        transform: Callable[[Record], Record],
        options: MigrationOptions,
        validate: Optional[Callable[[Record], bool]] = None,
        row_filter: Optional[RecordsFilter] = None,
        doc_filter: Optional[RecordsFilter] = None,
        describe: Optional[Callable[[Record], Any]] = None,
        write_mode: WriteMode = WriteMode.SKIP_EXISTING,
        page_size: Optional[int] = None,
        touch_field: Optional[str] = None,
        preserve_fields: Sequence[str] = (),
    ):
        self.name = name
        self.source = source
        self.collection = collection
        self.query = query
        self.natural_key = natural_key
        self.transform = transform
        self.options = options
        self.validate = validate
        self.row_filter = row_filter
        self.doc_filter = doc_filter
        self.describe = describe or (lambda row: next(iter(row.values()), None))
        self.write_mode = write_mode
        self.page_size = page_size
        self.touch_field = touch_field
        # left untouched when an existing document is updated
        self.preserve_fields = frozenset(preserve_fields)

    async def run(self) -> RunnerOutcome:
        outcome = RunnerOutcome()
        outcome.total = await self.source.count(self.query)
        logger.info(
            f"Migrating {self.name}: {outcome.total} source records"
            f"{' (dry run)' if self.options.dry_run else ''}"
        )

        offset = 0
        processed = 0
        while True:
            if self.page_size:
                sql = self.query.page_sql(offset, self.page_size)
            else:
                sql = self.query.all_sql()

            rows = await self.source.fetch(self.query, sql)
            if not rows:
                break

            await self._process_page(rows, outcome)
            processed += len(rows)
            log_progress(self.name, processed, outcome.total, outcome.error_count)

            if not self.page_size or len(rows) < self.page_size:
                break
            offset += self.page_size

        logger.info(
            f"Finished {self.name}: {outcome.inserted} inserted, {outcome.updated} updated, "
            f"{outcome.skipped_existing} already present, {outcome.rejected} rejected"
        )
        return outcome

    async def _process_page(self, rows: List[Record], outcome: RunnerOutcome) -> None:
        if self.row_filter:
            rows = self.row_filter(rows)

        docs = self._transform(rows, outcome)

        if self.doc_filter:
            docs = self.doc_filter(docs)

        if self.validate and self.options.validate_data:
            docs, invalid = validate_records(docs, self.validate)
            for doc in invalid:
                outcome.rejected += 1
                outcome.record_error(
                    f"Invalid record: {doc.get(self.natural_key)} - failed validation"
                )

        docs = self._dedupe(docs)
        if docs:
            await self._write(docs, outcome)

    def _transform(self, rows: List[Record], outcome: RunnerOutcome) -> List[Record]:
        if not self.options.isolate_record_errors:
            return transform_records(rows, self.transform)

        docs = []
        for row in rows:
            try:
                docs.append(self.transform(row))
            except Exception as e:
                key = self.describe(row)
                logger.warning(f"Rejected {self.name} record {key}: transform failed: {e}")
                outcome.rejected += 1
                outcome.record_error(f"Transform failed for record {key}: {e}")
        return docs

    def _dedupe(self, docs: List[Record]) -> List[Record]:
        """Keep the first document per natural key within a page; keyless documents all pass."""
        seen: Set[Any] = set()
        unique = []
        for doc in docs:
            key = doc.get(self.natural_key)
            if key is None:
                unique.append(doc)
                continue
            if key in seen:
                logger.warning(f"Duplicate {self.natural_key} {key} in {self.name} source, keeping first")
                continue
            seen.add(key)
            unique.append(doc)
        return unique

    async def _existing_keys(self, keys: List[Any]) -> Set[Any]:
        if self.collection is None or not keys:
            return set()
        cursor = self.collection.find(
            {self.natural_key: {"$in": keys}},
            {self.natural_key: 1, "_id": 0},
        )
        existing = set()
        async for doc in cursor:
            existing.add(doc.get(self.natural_key))
        return existing

    async def _write(self, docs: List[Record], outcome: RunnerOutcome) -> None:
        keys = [d.get(self.natural_key) for d in docs]
        existing = await self._existing_keys([k for k in keys if k is not None])
        new_docs = [d for d in docs if d.get(self.natural_key) not in existing]
        existing_docs = [d for d in docs if d.get(self.natural_key) in existing]

        if self.write_mode == WriteMode.SKIP_EXISTING and self.options.skip_existing:
            outcome.skipped_existing += len(existing_docs)
            updates: List[Record] = []
        else:
            updates = existing_docs

        if self.options.dry_run:
            outcome.inserted += len(new_docs)
            outcome.updated += len(updates)
            return

        if self.collection is None:
            raise ValueError(f"A destination collection is required to write {self.name}")

        batch_size = self.options.batch_size
        inserted = await process_batch(new_docs, self._insert_chunk, batch_size, f"{self.name} insert batch")
        outcome.inserted += sum(inserted)
        outcome.duplicates += len(new_docs) - sum(inserted)

        updated = await process_batch(updates, self._update_chunk, batch_size, f"{self.name} update batch")
        outcome.updated += sum(updated)

    async def _insert_chunk(self, chunk: List[Record]) -> List[int]:
        try:
            result = await self.collection.insert_many(chunk, ordered=False)
            return [len(result.inserted_ids)]
        except BulkWriteError as e:
            details = e.details or {}
            write_errors = details.get("writeErrors", [])
            other = [w for w in write_errors if w.get("code") != DUPLICATE_KEY_ERROR]
            if other:
                logger.error(f"Write errors inserting {self.name}: {other[:3]}")
                raise
            for write_error in write_errors:
                logger.warning(f"Skipping duplicate {self.name} record: {write_error.get('errmsg')}")
            return [details.get("nInserted", len(chunk) - len(write_errors))]

    async def _update_chunk(self, chunk: List[Record]) -> List[int]:
        now = utcnow()
        operations = []
        for doc in chunk:
            values = {k: v for k, v in doc.items() if k != "_id" and k not in self.preserve_fields}
            if self.touch_field:
                values[self.touch_field] = now
            operations.append(UpdateOne({self.natural_key: doc[self.natural_key]}, {"$set": values}))

        result = await self.collection.bulk_write(operations, ordered=False)
        return [result.matched_count]


# =============================================================================
# BASE MIGRATION
# =============================================================================

class BaseMigration(ABC):
    """
    Base for a legacy table migration.

    Subclasses describe their table (query, natural key, indexes, required
    fields) and implement `migrate()`, usually by building a BatchRunner
    and handing it to `run_pipeline()`.

    Usage:
        migration = ClientMigration(db, source, MigrationOptions(dry_run=True))
        result = await migration.execute()
    """

    table_name: str = "unknown"
    collection_name: str = ""
    natural_key: str = ""
    source_query: Optional[SourceQuery] = None

    # (keys, create_index kwargs)
    indexes: Sequence[Tuple[Any, Dict[str, Any]]] = ()
    # Fields every migrated document must carry
    required_fields: Sequence[str] = ()
    # (start_field, end_field) that must be ordered
    date_order: Optional[Tuple[str, str]] = None
    # name -> count_documents filter, reported by get_statistics()
    statistics_filters: Dict[str, Dict[str, Any]] = {}

    def __init__(
        self,
        db=None,
        source: Optional[LegacyQueryExecutor] = None,
        options: Optional[MigrationOptions] = None,
        data_filter: Optional[DataFilter] = None,
    ):
        self.db = db
        self.source = source
        self.options = options or get_default_options()
        self.data_filter = data_filter or get_data_filter()
        self._started_at = time.monotonic()

    @property
    def collection(self):
        if self.db is None or not self.collection_name:
            return None
        return self.db[self.collection_name]

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def execute(self) -> MigrationResult:
        """Run the migration; never raises."""
        self._started_at = time.monotonic()
        logger.info(f"Starting migration: {self.table_name}")
        try:
            result = await self.migrate()
        except Exception as e:
            logger.error(f"Migration {self.table_name} failed: {e}", exc_info=True)
            return self.create_result(self.table_name, 0, 0, [str(e)], failed=True)

        status = "completed" if result.success else "failed"
        logger.info(
            f"Migration {self.table_name} {status}: {result.migrated_records}/{result.total_records} "
            f"migrated in {result.duration}ms"
        )
        return result

    @abstractmethod
    async def migrate(self) -> MigrationResult:
        pass

    async def run_pipeline(self, *runners: BatchRunner) -> MigrationResult:
        """Run the runners in order, then index and check the collection."""
        outcome = RunnerOutcome()
        for runner in runners:
            outcome.add(await runner.run())

        if not self.options.dry_run and self.db is not None:
            await self.create_indexes()
            await self.validate_migration()
            if self.statistics_filters:
                try:
                    await self.get_statistics()
                except PyMongoError as e:
                    logger.warning(f"Could not collect {self.collection_name} statistics: {e}")

        return self.create_result(
            self.table_name,
            outcome.total,
            outcome.migrated,
            outcome.errors,
            inserted=outcome.inserted,
            updated=outcome.updated,
            rejected=outcome.rejected,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def process_batch(self, records, processor, batch_size: Optional[int] = None) -> List[Any]:
        return await process_batch(
            records, processor, batch_size or self.options.batch_size, f"{self.table_name} batch"
        )

    def validate_records(self, records, validator) -> ValidationPartition:
        return validate_records(records, validator)

    def transform_records(self, records, transformer) -> List[Record]:
        return transform_records(records, transformer)

    def log_progress(self, table_name: str, processed: int, total: int, errors: int = 0) -> None:
        log_progress(table_name, processed, total, errors)

    def create_result(
        self,
        table_name: str,
        total: int,
        migrated: int,
        errors: Sequence[str],
        failed: bool = False,
        inserted: int = 0,
        updated: int = 0,
        rejected: int = 0,
    ) -> MigrationResult:
        """
        Build the run result. Rejected records are reported in `errors` but
        only a failure of the run itself makes `success` False.
        """
        duration = int((time.monotonic() - self._started_at) * 1000)
        return MigrationResult(
            success=not failed,
            total_records=total,
            migrated_records=migrated,
            skipped_records=total - migrated,
            errors=tuple(errors[:config.MAX_RESULT_ERRORS]),
            duration=duration,
            table_name=table_name,
            inserted_records=inserted,
            updated_records=updated,
            rejected_records=rejected,
            dry_run=self.options.dry_run,
        )

    def build_runner(self, **overrides: Any) -> BatchRunner:
        """Runner preloaded with this migration's source, collection and options."""
        params: Dict[str, Any] = dict(
            name=self.table_name,
            source=self.source,
            collection=self.collection,
            query=self.source_query,
            natural_key=self.natural_key,
            options=self.options,
        )
        params.update(overrides)
        return BatchRunner(**params)

    # -------------------------------------------------------------------------
    # Post-migration
    # -------------------------------------------------------------------------

    async def create_indexes(self) -> None:
        collection = self.collection
        for keys, kwargs in self.indexes:
            await collection.create_index(keys, **kwargs)
        logger.info(f"Created {len(self.indexes)} indexes on {self.collection_name}")

    async def validate_migration(self) -> Dict[str, Any]:
        """
        Consistency checks over the migrated collection. Problems are logged
        as warnings and returned; they never fail the run.
        """
        collection = self.collection
        checks: Dict[str, Awaitable[Any]] = {
            "total": collection.count_documents({}),
        }
        for field_name in self.required_fields:
            checks[f"missing_{field_name}"] = collection.count_documents(
                {"$or": [{field_name: {"$exists": False}}, {field_name: None}]}
            )
        if self.date_order:
            start, end = self.date_order
            checks["date_order_violations"] = collection.count_documents({
                end: {"$ne": None},
                "$expr": {"$gt": [f"${start}", f"${end}"]},
            })
        if self.natural_key:
            checks["duplicate_keys"] = self._count_duplicate_keys()

        try:
            values = await asyncio.gather(*checks.values())
        except PyMongoError as e:
            logger.warning(f"Could not validate {self.collection_name}: {e}")
            return {}

        report = dict(zip(checks.keys(), values))
        for name, value in report.items():
            if name != "total" and value:
                logger.warning(f"Validation {self.collection_name}: {name} = {value}")
        logger.info(f"Validated {self.collection_name}: {report['total']} documents")
        return report

    async def _count_duplicate_keys(self) -> int:
        pipeline = [
            {"$group": {"_id": f"${self.natural_key}", "count": {"$sum": 1}}},
            {"$match": {"count": {"$gt": 1}}},
        ]
        duplicates = await self.collection.aggregate(pipeline).to_list(length=None)
        return len(duplicates)

    async def get_distribution(self, field_name: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Document counts grouped by `field_name`, largest first."""
        pipeline: List[Dict[str, Any]] = [
            {"$group": {"_id": f"${field_name}", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
        if limit:
            pipeline.append({"$limit": limit})
        rows = await self.collection.aggregate(pipeline).to_list(length=None)
        return [{"value": row["_id"], "count": row["count"]} for row in rows]

    async def get_statistics(self) -> Dict[str, int]:
        """Independent destination counts, fetched concurrently."""
        filters = {"total": {}, **self.statistics_filters}
        counts = await asyncio.gather(
            *(self.collection.count_documents(f) for f in filters.values())
        )
        stats = dict(zip(filters.keys(), counts))
        logger.info(f"{self.collection_name} statistics: {stats}")
        return stats

    async def get_sample_records(self, limit: int = 5) -> List[Record]:
        """First `limit` source rows, transformed, for dry-run review."""
        rows = await self.source.fetch(self.source_query, self.source_query.sample_sql(limit))
        return [self.transform_record(row) for row in rows]

    @abstractmethod
    def transform_record(self, row: Record) -> Record:
        """Map one legacy row to its destination document."""

    def validate_record(self, doc: Record) -> bool:
        return True
