"""
Clinic Back Office - Insurance Company Address Migration

Migrates the first-insurance company address book
(sb_1st_insurance_company_address) into `insurancecompanyaddresses`.
Addresses with a malformed Canadian postal code, or that look like test
data, are dropped.
"""

import logging
from typing import Any, Dict, List

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery
from .transforms import build_postal_code, clean_text, contains_keyword, is_valid_postal_code, to_int, utcnow

logger = logging.getLogger(__name__)

ADDRESS_COLUMNS = (
    "sb_1st_insurance_company_address_key",
    "sb_1st_insurance_company_address_name",
    "sb_1st_insurance_company_name",
    "sb_1st_insurance_company_city",
    "sb_1st_insurance_company_province",
    "sb_1st_insurance_company_postalCode_first3Digits",
    "sb_1st_insurance_company_postalCode_last3Digits",
)

TEST_KEYWORDS = ("test", "demo")


def transform_address(row: Dict[str, Any]) -> Dict[str, Any]:
    postal = build_postal_code(
        row.get("sb_1st_insurance_company_postalCode_first3Digits"),
        row.get("sb_1st_insurance_company_postalCode_last3Digits"),
    )
    now = utcnow()
    return {
        "addressKey": to_int(row.get("sb_1st_insurance_company_address_key")),
        "addressName": clean_text(row.get("sb_1st_insurance_company_address_name")) or "",
        "companyName": clean_text(row.get("sb_1st_insurance_company_name")) or "",
        "city": clean_text(row.get("sb_1st_insurance_company_city")) or "",
        "province": clean_text(row.get("sb_1st_insurance_company_province")) or "",
        "postalCodeFirst3": postal["first3"] or "",
        "postalCodeLast3": postal["last3"] or "",
        "fullPostalCode": postal["full"] or "",
        "dateCreated": now,
        "dateModified": now,
    }


def has_valid_postal_code(doc: Dict[str, Any]) -> bool:
    first3, last3 = doc.get("postalCodeFirst3"), doc.get("postalCodeLast3")
    return bool(first3 and last3) and is_valid_postal_code(first3, last3)


def looks_like_test_address(doc: Dict[str, Any]) -> bool:
    return any(contains_keyword(doc.get(f), TEST_KEYWORDS) for f in ("addressName", "companyName"))


def validate_address(doc: Dict[str, Any]) -> bool:
    key = doc.get("addressKey")
    if not key:
        logger.warning(f"Invalid addressKey: {key}")
        return False
    for field_name in ("addressName", "companyName", "city", "province"):
        if not doc.get(field_name):
            logger.warning(f"Missing {field_name} for address key: {key}")
            return False
    return True


class InsuranceCompanyAddressMigration(BaseMigration):
    """sb_1st_insurance_company_address -> insurancecompanyaddresses."""

    table_name = "sb_1st_insurance_company_address"
    collection_name = "insurancecompanyaddresses"
    natural_key = "addressKey"
    source_query = SourceQuery(
        table="sb_1st_insurance_company_address",
        columns=ADDRESS_COLUMNS,
        order_by="sb_1st_insurance_company_address_key",
    )
    indexes = (
        ("addressKey", {"unique": True, "background": True}),
        ([("companyName", 1), ("city", 1)], {"background": True}),
        ([("province", 1), ("city", 1)], {"background": True}),
        ("fullPostalCode", {"background": True}),
    )
    required_fields = ("addressKey", "addressName", "companyName", "city", "province")

    def filter_documents(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = [d for d in docs if has_valid_postal_code(d) and not looks_like_test_address(d)]
        self.data_filter.log_filter_stats(len(docs), len(kept), "Insurance company addresses")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_address(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_address(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_address,
            validate=validate_address,
            doc_filter=self.filter_documents,
            describe=lambda row: row.get("sb_1st_insurance_company_address_key"),
            write_mode=WriteMode.SKIP_EXISTING,
        )
        return await self.run_pipeline(runner)
