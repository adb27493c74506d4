"""
Clinic Back Office - Migration Configuration

Environment settings, default run options and the clinic's data retention
policy ("VISIO rules") for the legacy MSSQL -> MongoDB migration.

The retention policy is loaded once at process start. An optional JSON file
named by MIGRATION_RULES_FILE may override any subset of the defaults, e.g.:

    {
        "retained_clinics": ["Century Care", "My Cloud"],
        "excluded_products": ["AC", "AC50"]
    }
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


# =============================================================================
# ENVIRONMENT
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "clinic_back_office")

# ODBC connection string for the legacy database, e.g.
# DRIVER={ODBC Driver 18 for SQL Server};SERVER=...;DATABASE=...;UID=...;PWD=...
MSSQL_CONNECTION_STRING = os.environ.get("MSSQL_CONNECTION_STRING", "")

MIGRATION_BATCH_SIZE = int(os.environ.get("MIGRATION_BATCH_SIZE", "1000"))
MIGRATION_SKIP_EXISTING = _env_flag("MIGRATION_SKIP_EXISTING", "true")
MIGRATION_ISOLATE_RECORD_ERRORS = _env_flag("MIGRATION_ISOLATE_RECORD_ERRORS", "false")
MIGRATION_RULES_FILE = os.environ.get("MIGRATION_RULES_FILE")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Keep at most this many error messages on a MigrationResult
MAX_RESULT_ERRORS = 100


# =============================================================================
# RETENTION POLICY
# =============================================================================

DEFAULT_RETAINED_CLINICS = (
    "Bodybliss Physiotherapy",
    "Bodybliss One Care",
    "Century Care",
    "Duncan Mills Ortholine",
    "My Cloud",
    "Physiobliss",
)

DEFAULT_EXCLUDED_CLINICS = (
    "Bodybliss",
    "Bioform Health",
    "Orthopedic Orthotic Appliances",
    "Markham Orthopedic",
    "Extreme Physio",
    "Active Force",
)

DEFAULT_EXCLUDED_PRODUCTS = (
    "AC", "AC50", "AC60", "AC80", "ALLE", "ANX", "ARTH", "BNP", "BPH",
    "CANPREV5HTP", "CANPREVALA", "CANPREVEP", "CANPREVHH", "CANPREVHL",
    "CANPREVIBS", "CANPREVNEM", "CANPREVPP", "CANPREVTP", "CFOS", "CHRF",
    "CHS", "CP", "DeeP1", "DLA300", "DLFC", "DLGMCM", "DLIG", "DLLIV",
    "DLMC", "DLPSP", "DLQ", "DLTQ", "DLTS", "DLUPRO", "EVCO", "HB", "HC",
    "IND", "INS", "LB01", "LB02", "LB03", "LBCOS", "LCKK", "LFB219", "LS",
    "ME", "MenoPrev", "MI", "MIG00", "MIG01", "MIG02", "MIG03", "MIG24",
    "MIGM0", "MIGSG", "MIGTR", "NATser", "NATser125", "NATser140",
    "NATser180", "NAtser25", "NATser250", "NATser30", "NATSer49", "NATser80",
    "NSA", "NSAUT", "NSBA", "NSFV1", "NSFV10", "NSFV15", "NSFV20", "NSFV30",
    "NSFV45", "NSFV5", "NSIV1", "NSIV30", "NSMR", "NSU", "OCF63", "OS",
    "OS135", "OS200", "OSTAS", "OSTT30", "OSTT45", "OSTT60", "PEB12", "PEEX",
    "PEHE", "PELG", "PELGD", "PEOB", "PEP", "PEPB", "PEV", "PM", "PR1", "PR2",
    "SC", "SFH", "SFHCGS", "SFHEDI", "SH01", "SHCOS", "SlimPro", "UL", "WH",
    "WM", "WSVB100", "WSVB9995",
)

DEFAULT_EXCLUDED_MODULES = ("SCHEDULE", "LAB", "RELATIONS")

DEFAULT_CLIENT_RETAINED_FIELDS = (
    "Name",
    "Address",
    "Birthday",
    "Cellphone No.",
    "Home No.",
    "Email. Address",
    "Company Name",
    "Referring MD",
    "Gender",
)

DEFAULT_CLIENT_EXCLUDED_FIELDS = (
    "CSR Name",
    "Work no. and Extension",
    "Family MD",
    "How did you hear about us",
    "View Insuranc",
    "Generate PDF. Form (insurance)",
)

DEFAULT_INSURANCE_RETAINED_FIELDS = (
    "Policy Holder Name",
    "Policy Holder Bday",
    "Insurance Company Name",
    "Group No.",
    "Certificate No.",
)

DEFAULT_INSURANCE_EXCLUDED_FIELDS = ("3rd Insurance Column",)

DEFAULT_RETAINED_ORDER_STATUSES = (
    "Pending Sales Refund 1",
    "Pending Sales Refund 1 & COB 1",
)

DEFAULT_RETAINED_DATE_TYPES = ("Order Date", "Invoice Date")

# Legacy sb_clients column prefix -> policy field label
DEFAULT_CLIENT_FIELD_LABELS = {
    "sb_clients_csr_name": "CSR Name",
    "sb_clients_work_": "Work no. and Extension",
    "sb_clients_family_md": "Family MD",
    "sb_clients_referral_": "How did you hear about us",
    "sb_clients_3rd_insurance_": "3rd Insurance Column",
    "sb_clients_first_name": "Name",
    "sb_clients_last_name": "Name",
    "sb_clients_name": "Name",
    "sb_clients_address": "Address",
    "sb_clients_apartment": "Address",
    "sb_clients_city": "Address",
    "sb_clients_province": "Address",
    "sb_clients_postal_code": "Address",
    "sb_clients_birthday_": "Birthday",
    "sb_clients_cell_": "Cellphone No.",
    "sb_clients_home_": "Home No.",
    "sb_clients_email": "Email. Address",
    "sb_clients_company": "Company Name",
    "sb_clients_referring_md": "Referring MD",
    "sb_clients_gender": "Gender",
    "sb_clients_1st_insurance_policy_holder_name": "Policy Holder Name",
    "sb_clients_1st_insurance_policy_holder_birthday_": "Policy Holder Bday",
    "sb_clients_1st_insurance_company": "Insurance Company Name",
    "sb_clients_1st_insurance_group_number": "Group No.",
    "sb_clients_1st_insurance_certificate_number": "Certificate No.",
}

DEFAULT_TEST_KEYWORDS = ("test", "demo", "sample")


@dataclass(frozen=True)
class RetentionRules:
    """Immutable retention policy injected into DataFilter."""
    retained_clinics: FrozenSet[str] = frozenset(DEFAULT_RETAINED_CLINICS)
    excluded_clinics: FrozenSet[str] = frozenset(DEFAULT_EXCLUDED_CLINICS)
    excluded_products: FrozenSet[str] = frozenset(DEFAULT_EXCLUDED_PRODUCTS)
    excluded_modules: FrozenSet[str] = frozenset(DEFAULT_EXCLUDED_MODULES)
    client_retained_fields: FrozenSet[str] = frozenset(DEFAULT_CLIENT_RETAINED_FIELDS)
    client_excluded_fields: FrozenSet[str] = frozenset(DEFAULT_CLIENT_EXCLUDED_FIELDS)
    insurance_retained_fields: FrozenSet[str] = frozenset(DEFAULT_INSURANCE_RETAINED_FIELDS)
    insurance_excluded_fields: FrozenSet[str] = frozenset(DEFAULT_INSURANCE_EXCLUDED_FIELDS)
    retained_order_statuses: FrozenSet[str] = frozenset(DEFAULT_RETAINED_ORDER_STATUSES)
    retained_date_types: FrozenSet[str] = frozenset(DEFAULT_RETAINED_DATE_TYPES)
    client_field_labels: Mapping[str, str] = None
    test_keywords: FrozenSet[str] = frozenset(DEFAULT_TEST_KEYWORDS)

    def __post_init__(self):
        if self.client_field_labels is None:
            object.__setattr__(self, "client_field_labels", dict(DEFAULT_CLIENT_FIELD_LABELS))

    @classmethod
    def from_dict(cls, overrides: Mapping[str, Any]) -> "RetentionRules":
        """Build rules from defaults plus a mapping of overrides.

        Unknown keys raise ValueError so that a typo in a rules file is not
        silently ignored.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown retention rule keys: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key == "client_field_labels":
                values[key] = dict(value)
            else:
                values[key] = frozenset(value)
        return replace(cls(), **values)


def load_retention_rules(path: Optional[str] = None) -> RetentionRules:
    """Load the retention policy, applying a JSON override file if given."""
    path = path or MIGRATION_RULES_FILE
    if not path:
        return RetentionRules()

    rules_path = Path(path)
    if not rules_path.exists():
        raise FileNotFoundError(f"Retention rules file not found: {rules_path}")

    with open(rules_path, "r", encoding="utf-8") as f:
        overrides = json.load(f)

    logger.info(f"Loaded retention rule overrides from {rules_path}: {sorted(overrides)}")
    return RetentionRules.from_dict(overrides)
