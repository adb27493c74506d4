"""
Clinic Back Office - Migration Data Filter

Business retention predicates ("VISIO rules") applied to legacy records
before they are written to MongoDB:

- Only records belonging to a retained clinic are migrated
- Discontinued products are dropped from orders and billing
- Client columns outside the retained field policy are nulled out
- Test/demo rows and rows with implausible dates are excluded

Every predicate is pure and fails closed: a missing clinic or product code
means "exclude". None of them raise on malformed input.
"""

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from .config import RetentionRules, load_retention_rules
from .transforms import clean_text, contains_keyword, parse_date

logger = logging.getLogger(__name__)


class DataFilter:
    """Predicate engine over an injected, immutable RetentionRules value."""

    def __init__(self, rules: Optional[RetentionRules] = None):
        self.rules = rules or RetentionRules()
        self._excluded_products_upper = frozenset(
            code.strip().upper() for code in self.rules.excluded_products
        )

    # -------------------------------------------------------------------------
    # Single-value predicates
    # -------------------------------------------------------------------------

    def should_include_clinic(self, clinic_name: Any) -> bool:
        if not isinstance(clinic_name, str):
            return False
        name = clinic_name.strip()
        return bool(name) and name in self.rules.retained_clinics

    def should_include_product(self, product_code: Any) -> bool:
        if product_code is None or isinstance(product_code, bool):
            return False
        code = str(product_code).strip()
        if not code:
            return False
        return code.upper() not in self._excluded_products_upper

    def should_retain_client_field(self, label: str) -> bool:
        if label in self.rules.client_excluded_fields:
            return False
        return label in self.rules.client_retained_fields

    def should_retain_insurance_field(self, label: str) -> bool:
        if label in self.rules.insurance_excluded_fields:
            return False
        return label in self.rules.insurance_retained_fields

    def should_retain_order_status(self, status: Any) -> bool:
        return isinstance(status, str) and status.strip() in self.rules.retained_order_statuses

    def should_retain_date_type(self, date_type: Any) -> bool:
        return isinstance(date_type, str) and date_type.strip() in self.rules.retained_date_types

    def is_module_excluded(self, module: str) -> bool:
        return (module or "").upper() in self.rules.excluded_modules

    def is_test_record(self, record: Dict[str, Any], text_fields: Iterable[str]) -> bool:
        """True when any of the given text fields mentions a test keyword."""
        return any(
            contains_keyword(record.get(field_name), self.rules.test_keywords)
            for field_name in text_fields
        )

    # -------------------------------------------------------------------------
    # Collection filters
    # -------------------------------------------------------------------------

    def filter_records_by_clinic(
        self,
        records: Sequence[Dict[str, Any]],
        clinic_field: str = "clinic_name"
    ) -> List[Dict[str, Any]]:
        return [r for r in records if self.should_include_clinic(r.get(clinic_field))]

    def filter_orders_by_products(
        self,
        records: Sequence[Dict[str, Any]],
        product_field: str = "product_code"
    ) -> List[Dict[str, Any]]:
        return [r for r in records if self.should_include_product(r.get(product_field))]

    def _label_for(self, column: str) -> Optional[str]:
        """Policy label of a legacy column, matched by longest prefix."""
        best = None
        for prefix, label in self.rules.client_field_labels.items():
            if column.startswith(prefix) and (best is None or len(prefix) > len(best[0])):
                best = (prefix, label)
        return best[1] if best else None

    def _null_columns(self, record: Dict[str, Any], excluded: FrozenSet[str]) -> Dict[str, Any]:
        filtered = dict(record)
        for column in record:
            if self._label_for(column) in excluded:
                filtered[column] = None
        return filtered

    def filter_client_data(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return a copy of a legacy client row with policy-excluded columns
        set to None. Columns with no policy label pass through unchanged,
        so identifiers and natural keys always survive.
        """
        excluded = self.rules.client_excluded_fields | self.rules.insurance_excluded_fields
        return self._null_columns(record, excluded)

    def filter_insurance_data(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._null_columns(record, self.rules.insurance_excluded_fields)

    def apply_visio_filters(
        self,
        records: Sequence[Dict[str, Any]],
        text_fields: Iterable[str] = (),
        date_field: Optional[str] = None,
        earliest: Optional[datetime] = None,
        latest: Optional[datetime] = None,
        clinic_field: Optional[str] = None,
        require_clinic: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Keep the records that pass every configured rule.

        Rules are independent predicates combined with AND (test-data
        keywords, date range, clinic retention), so the surviving set does
        not depend on the order they are checked in. A missing date passes
        the range check; required-date checks belong to record validation.
        """
        text_fields = tuple(text_fields)
        checks = []

        if text_fields:
            checks.append(lambda r: not self.is_test_record(r, text_fields))

        if date_field and (earliest or latest):
            def in_range(r):
                value = parse_date(r.get(date_field))
                if value is None:
                    return True
                if earliest and value < earliest:
                    return False
                if latest and value > latest:
                    return False
                return True
            checks.append(in_range)

        if clinic_field:
            def clinic_ok(r):
                if not require_clinic and clean_text(r.get(clinic_field)) is None:
                    return True
                return self.should_include_clinic(r.get(clinic_field))
            checks.append(clinic_ok)

        return [r for r in records if all(check(r) for check in checks)]

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_retained_clinics(self) -> List[str]:
        return sorted(self.rules.retained_clinics)

    def get_excluded_products(self) -> List[str]:
        return sorted(self.rules.excluded_products)

    def get_migration_filter_summary(self) -> Dict[str, Any]:
        return {
            "retained_clinics": self.get_retained_clinics(),
            "excluded_clinics": sorted(self.rules.excluded_clinics),
            "excluded_products_count": len(self.rules.excluded_products),
            "excluded_modules": sorted(self.rules.excluded_modules),
            "retained_order_statuses": sorted(self.rules.retained_order_statuses),
            "retained_date_types": sorted(self.rules.retained_date_types),
        }

    def validate_clinic_for_migration(self, clinic_name: Any) -> Dict[str, Any]:
        """Explain the retention decision for a clinic name."""
        name = clinic_name.strip() if isinstance(clinic_name, str) else None
        if not name:
            return {"is_valid": False, "reason": "Missing clinic name"}
        if name in self.rules.retained_clinics:
            return {"is_valid": True, "reason": "Clinic is retained"}
        if name in self.rules.excluded_clinics:
            return {"is_valid": False, "reason": "Clinic is explicitly excluded"}
        return {"is_valid": False, "reason": "Clinic is not in the retained list"}

    def log_filter_stats(self, original_count: int, filtered_count: int, label: str) -> None:
        excluded = original_count - filtered_count
        rate = (filtered_count / original_count * 100) if original_count else 0.0
        logger.info(
            f"{label} filter: {original_count} original, {filtered_count} retained, "
            f"{excluded} excluded ({rate:.1f}% retention)"
        )


_data_filter: Optional[DataFilter] = None


def get_data_filter() -> DataFilter:
    """Process-wide filter built from the configured retention rules."""
    global _data_filter
    if _data_filter is None:
        _data_filter = DataFilter(load_retention_rules())
    return _data_filter
