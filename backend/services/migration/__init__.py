"""
Clinic Back Office - Legacy Migration Module

Moves the clinic's legacy MSSQL tables into MongoDB.

Components:
- DataFilter: business retention rules (clinics, products, client fields)
- LegacyQueryExecutor: source abstraction (MSSQL, in-memory, JSON export)
- BaseMigration / BatchRunner: shared batch engine with dry run support
- Concrete migrations, one per legacy table or lookup group
- MigrationManager: dependency-ordered execution and summary reporting
"""

from .config import RetentionRules, load_retention_rules
from .data_filter import DataFilter, get_data_filter
from .sources import (
    InMemoryQueryExecutor, JsonFileQueryExecutor, LegacyQueryExecutor,
    MSSQLQueryExecutor, SourceQuery
)
from .job import (
    BaseMigration, BatchRunner, MigrationOptions, MigrationResult, WriteMode,
    get_default_options
)
from .manager import (
    MIGRATION_PLANS, CircularDependencyError, MigrationManager,
    MigrationNotFoundError, MigrationPlan
)

__all__ = [
    'RetentionRules',
    'load_retention_rules',
    'DataFilter',
    'get_data_filter',
    'SourceQuery',
    'LegacyQueryExecutor',
    'MSSQLQueryExecutor',
    'InMemoryQueryExecutor',
    'JsonFileQueryExecutor',
    'BaseMigration',
    'BatchRunner',
    'MigrationOptions',
    'MigrationResult',
    'WriteMode',
    'get_default_options',
    'MigrationPlan',
    'MIGRATION_PLANS',
    'MigrationManager',
    'CircularDependencyError',
    'MigrationNotFoundError',
]
