"""
Clinic Back Office - Migration Manager

Registers every legacy table migration with its dependencies and priority,
orders them, and runs them one after another against a single source
connection and a single MongoDB client.

Dependencies are hard: a migration only runs after everything it references
(e.g. clients before contact history) has been migrated, so execution is
strictly sequential.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from . import config
from .advanced_billing import AdvancedBillingMigration
from .appointments import AppointmentMigration
from .client_clinic_relationships import ClientClinicRelationshipMigration
from .clients import ClientMigration
from .contact_history import ContactHistoryMigration
from .data_filter import DataFilter, get_data_filter
from .events import EventMigration
from .insurance_company_addresses import InsuranceCompanyAddressMigration
from .insurance_reference import InsuranceReferenceMigration
from .job import BaseMigration, MigrationOptions, MigrationResult, get_default_options
from .sources import LegacyQueryExecutor, MSSQLQueryExecutor

logger = logging.getLogger(__name__)

ERROR_PREVIEW = 3


class CircularDependencyError(ValueError):
    """The migration plan's dependencies form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class MigrationNotFoundError(KeyError):
    pass


# =============================================================================
# PLANS
# =============================================================================

MigrationFactory = Callable[..., BaseMigration]


@dataclass(frozen=True)
class MigrationPlan:
    """
    A registered migration. `factory` is called with
    (db, source, options, data_filter) and returns a fresh migration.
    """
    name: str
    factory: MigrationFactory
    priority: int
    dependencies: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "dependencies": sorted(self.dependencies),
        }


def _plan(name: str, factory: MigrationFactory, priority: int, dependencies: Iterable[str] = ()) -> MigrationPlan:
    return MigrationPlan(name, factory, priority, frozenset(dependencies))


MIGRATION_PLANS: Dict[str, MigrationPlan] = {
    "clients": _plan("Client Migration", ClientMigration, 2),
    "client_clinic_relationships": _plan(
        "Client-Clinic Relationships Migration", ClientClinicRelationshipMigration, 3, ["clients"]
    ),
    "contact_history": _plan(
        "Contact History Migration", ContactHistoryMigration, 4, ["clients", "client_clinic_relationships"]
    ),
    "appointments": _plan("Appointment Migration", AppointmentMigration, 5, ["clients"]),
    "insurance_company_addresses": _plan(
        "Insurance Company Address Migration", InsuranceCompanyAddressMigration, 1
    ),
    "events": _plan("Event Migration", EventMigration, 3, ["clients"]),
    "advanced_billing": _plan("Advanced Billing Migration", AdvancedBillingMigration, 3, ["clients"]),
    "insurance_reference": _plan("Insurance Reference Migration", InsuranceReferenceMigration, 1),
}


def find_cycle(plans: Mapping[str, MigrationPlan]) -> Optional[List[str]]:
    """Depth-first search; returns the first cycle found as a key path."""
    visited = set()
    path: List[str] = []
    on_path = set()

    def visit(key: str) -> Optional[List[str]]:
        if key in on_path:
            return path[path.index(key):] + [key]
        if key in visited:
            return None
        on_path.add(key)
        path.append(key)
        for dependency in sorted(plans[key].dependencies):
            cycle = visit(dependency)
            if cycle:
                return cycle
        path.pop()
        on_path.discard(key)
        visited.add(key)
        return None

    for key in sorted(plans):
        cycle = visit(key)
        if cycle:
            return cycle
    return None


def execution_order(plans: Mapping[str, MigrationPlan]) -> List[str]:
    """
    Topological order of `plans`. Among migrations whose dependencies are
    all satisfied, the lowest (priority, key) runs first.
    """
    for key, plan in plans.items():
        unknown = plan.dependencies - set(plans)
        if unknown:
            raise ValueError(f"Migration {key} depends on unknown migrations: {', '.join(sorted(unknown))}")

    cycle = find_cycle(plans)
    if cycle:
        raise CircularDependencyError(cycle)

    remaining = {key: set(plan.dependencies) for key, plan in plans.items()}
    dependents: Dict[str, List[str]] = {key: [] for key in plans}
    for key, plan in plans.items():
        for dependency in plan.dependencies:
            dependents[dependency].append(key)

    ready = [(plans[key].priority, key) for key, deps in remaining.items() if not deps]
    heapq.heapify(ready)

    order = []
    while ready:
        _, key = heapq.heappop(ready)
        order.append(key)
        for dependent in dependents[key]:
            remaining[dependent].discard(key)
            if not remaining[dependent]:
                heapq.heappush(ready, (plans[dependent].priority, dependent))
    return order


# =============================================================================
# MANAGER
# =============================================================================

class MigrationManager:
    """
    Runs registered migrations in dependency order.

    Usage:
        manager = MigrationManager(MigrationOptions(dry_run=True))
        outcome = await manager.execute_all()
        outcome["success"], outcome["results"]
    """

    def __init__(
        self,
        options: Optional[MigrationOptions] = None,
        source: Optional[LegacyQueryExecutor] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        db_name: str = config.DB_NAME,
        plans: Optional[Mapping[str, MigrationPlan]] = None,
        data_filter: Optional[DataFilter] = None,
    ):
        self.options = options or get_default_options()
        self.source = source
        self.client_factory = client_factory or (lambda: AsyncIOMotorClient(config.MONGO_URL))
        self.db_name = db_name
        self.data_filter = data_filter or get_data_filter()
        self.migrations: Dict[str, MigrationPlan] = {}
        self.results: Dict[str, MigrationResult] = {}
        self.register_migrations(plans)

    def register_migrations(self, plans: Optional[Mapping[str, MigrationPlan]] = None) -> None:
        self.migrations = dict(MIGRATION_PLANS if plans is None else plans)

    def get_execution_order(self) -> List[str]:
        return execution_order(self.migrations)

    def _get_plan(self, key: str) -> MigrationPlan:
        try:
            return self.migrations[key]
        except KeyError:
            raise MigrationNotFoundError(f"Migration not found: {key}") from None

    def _get_source(self) -> LegacyQueryExecutor:
        if self.source is None:
            self.source = MSSQLQueryExecutor(config.MSSQL_CONNECTION_STRING)
        return self.source

    def log_filter_summary(self) -> None:
        summary = self.data_filter.get_migration_filter_summary()
        logger.info("Business rules filter summary:")
        logger.info(f"  Clinics to retain: {len(summary['retained_clinics'])}")
        logger.info(f"  Clinics to exclude: {len(summary['excluded_clinics'])}")
        logger.info(f"  Products to exclude: {summary['excluded_products_count']}")
        logger.info(f"  Modules to skip: {', '.join(summary['excluded_modules'])}")
        for clinic in summary["retained_clinics"]:
            logger.info(f"  - {clinic}")

    async def _run(self, key: str, db, source: LegacyQueryExecutor) -> MigrationResult:
        plan = self._get_plan(key)
        logger.info(f"Executing {plan.name} ({key})")
        migration = plan.factory(db, source, self.options, self.data_filter)
        result = await migration.execute()
        self.results[key] = result
        return result

    async def execute_all(self, force: bool = False) -> Dict[str, Any]:
        """
        Run every registered migration in dependency order. Stops at the
        first failed migration that reported errors unless `force` is set
        or this is a dry run.
        """
        order = self.get_execution_order()
        logger.info(
            f"Starting legacy migration of {len(order)} tables"
            f"{' (dry run)' if self.options.dry_run else ''}"
        )
        self.log_filter_summary()

        results: List[MigrationResult] = []
        source = self._get_source()
        client = self.client_factory()
        try:
            await source.connect()
            db = client[self.db_name]
            logger.info(f"Connected to {source.get_source_name()} and MongoDB database {self.db_name}")

            for key in order:
                result = await self._run(key, db, source)
                results.append(result)

                if result.success:
                    logger.info(
                        f"{key} completed: {result.migrated_records}/{result.total_records} records"
                    )
                    continue

                logger.error(f"{key} failed: {list(result.errors[:ERROR_PREVIEW])}")
                if result.errors and not (force or self.options.dry_run):
                    logger.warning("Stopping migration due to errors. Use --force to continue on errors.")
                    break
        finally:
            await source.close()
            client.close()
            logger.info("Closed source and MongoDB connections")

        report = self.generate_summary_report(results)
        return {"success": report["failed"] == 0, "results": results, "report": report}

    async def execute_migration(self, key: str) -> MigrationResult:
        """Run one migration by key; its dependencies are not checked."""
        plan = self._get_plan(key)
        logger.info(f"Executing single migration: {plan.name}")

        source = self._get_source()
        client = self.client_factory()
        try:
            await source.connect()
            return await self._run(key, client[self.db_name], source)
        finally:
            await source.close()
            client.close()

    def generate_summary_report(self, results: List[MigrationResult]) -> Dict[str, Any]:
        total_records = sum(r.total_records for r in results)
        migrated_records = sum(r.migrated_records for r in results)
        duration = sum(r.duration for r in results)
        error_count = sum(r.error_count for r in results)
        successful = sum(1 for r in results if r.success)

        report = {
            "migrations": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "total_records": total_records,
            "migrated_records": migrated_records,
            "duration_ms": duration,
            "error_count": error_count,
            "success_rate": round(migrated_records / total_records * 100, 2) if total_records else None,
            "results": [r.to_dict() for r in results],
        }

        logger.info("=" * 80)
        logger.info("MIGRATION SUMMARY REPORT")
        logger.info("=" * 80)
        logger.info(f"Total migrations: {report['migrations']}")
        logger.info(f"Successful: {report['successful']}")
        logger.info(f"Failed: {report['failed']}")
        logger.info(f"Total records: {total_records:,}")
        logger.info(f"Migrated records: {migrated_records:,}")
        logger.info(f"Total duration: {duration / 1000:.2f}s")
        logger.info(f"Total errors: {error_count}")
        if report["success_rate"] is not None:
            logger.info(f"Success rate: {report['success_rate']:.2f}%")

        for result in results:
            status = "OK" if result.success else "FAILED"
            logger.info(
                f"[{status}] {result.table_name}: {result.migrated_records}/{result.total_records} "
                f"({result.duration / 1000:.2f}s)"
            )
            for error in result.errors[:ERROR_PREVIEW]:
                logger.error(f"    {error}")
            if result.error_count > ERROR_PREVIEW:
                logger.error(f"    ... and {result.error_count - ERROR_PREVIEW} more errors")
        logger.info("=" * 80)
        return report

    def list_migrations(self) -> List[Dict[str, Any]]:
        """Registered migrations in execution order; touches no data."""
        listing = []
        for position, key in enumerate(self.get_execution_order(), start=1):
            plan = self.migrations[key]
            listing.append({"position": position, "key": key, **plan.to_dict()})
            logger.info(f"{position}. {plan.name} ({key})")
            if plan.dependencies:
                logger.info(f"   Dependencies: {', '.join(sorted(plan.dependencies))}")
        return listing
