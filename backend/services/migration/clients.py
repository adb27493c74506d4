"""
Clinic Back Office - Client Migration

Migrates sb_clients rows into the `clients` collection.

- Only clients whose default clinic is retained are migrated
- Policy-excluded columns (CSR name, work phone, family MD, referral
  source, 3rd insurance) are nulled before the transform
- Existing clients (by clientId) are skipped when skip_existing is set
"""

import logging
from typing import Any, Dict, List

from .job import BaseMigration, MigrationResult, WriteMode
from .sources import SourceQuery, not_null
from .transforms import build_phone, build_postal_code, clean_text, normalize_gender, parse_date, to_int, utcnow

logger = logging.getLogger(__name__)

CLIENT_COLUMNS = (
    "sb_clients_id",
    "sb_clients_key",
    "sb_clients_first_name",
    "sb_clients_last_name",
    "sb_clients_name",
    "sb_clients_name_for_autocomplete",
    "sb_clients_birthday_day",
    "sb_clients_birthday_month",
    "sb_clients_birthday_year",
    "sb_clients_gender",
    "sb_clients_address",
    "sb_clients_apartment",
    "sb_clients_city",
    "sb_clients_province",
    "sb_clients_postal_code_1",
    "sb_clients_postal_code_2",
    "sb_clients_home_country_code",
    "sb_clients_home_area_code",
    "sb_clients_home_phone_number",
    "sb_clients_cell_country_code",
    "sb_clients_cell_area_code",
    "sb_clients_cell_phone_number",
    "sb_clients_work_country_code",
    "sb_clients_work_area_code",
    "sb_clients_work_phone_number",
    "sb_clients_work_phone_extension",
    "sb_clients_email",
    "sb_clients_company",
    "sb_clients_company_other",
    "sb_clients_family_md",
    "sb_clients_referring_md",
    "sb_clients_csr_name",
    "sb_clients_location",
    "sb_default_clinic",
    "sb_clients_date_created",
    "sb_clients_referral_type",
    "sb_clients_referral_subtype",
    "sb_clients_1st_insurance_dpa",
    "sb_clients_1st_insurance_policy_holder",
    "sb_clients_1st_insurance_cob",
    "sb_clients_1st_insurance_policy_holder_name",
    "sb_clients_1st_insurance_policy_holder_birthday_day",
    "sb_clients_1st_insurance_policy_holder_birthday_month",
    "sb_clients_1st_insurance_policy_holder_birthday_year",
    "sb_clients_1st_insurance_company",
    "sb_clients_1st_insurance_company_address",
    "sb_clients_1st_insurance_city",
    "sb_clients_1st_insurance_province",
    "sb_clients_1st_insurance_postal_code_1",
    "sb_clients_1st_insurance_postal_code_2",
    "sb_clients_1st_insurance_group_number",
    "sb_clients_1st_insurance_certificate_number",
)

EMPTY_COVERAGE = {
    "numberOfOrthotics": "",
    "totalAmountPerOrthotic": 0,
    "totalAmountPerYear": 0,
    "frequency": "",
    "numOrthoticsPerYear": "",
    "orthopedicShoes": 0,
    "compressionStockings": 0,
    "physiotherapy": 0,
    "massage": 0,
    "other": 0,
}


def _text(row: Dict[str, Any], column: str) -> str:
    return clean_text(row.get(column)) or ""


def _birthday(row: Dict[str, Any], prefix: str) -> Dict[str, str]:
    return {
        "day": _text(row, f"{prefix}_day"),
        "month": _text(row, f"{prefix}_month"),
        "year": _text(row, f"{prefix}_year"),
    }


def _first_insurance(row: Dict[str, Any]) -> List[Dict[str, Any]]:
    prefix = "sb_clients_1st_insurance"
    company = clean_text(row.get(f"{prefix}_company"))
    if not company:
        return []

    return [{
        "type": "1st",
        "dpa": _text(row, f"{prefix}_dpa").upper() == "Y",
        "policyHolder": clean_text(row.get(f"{prefix}_policy_holder")) or "self",
        "cob": clean_text(row.get(f"{prefix}_cob")) or "NO",
        "policyHolderName": _text(row, f"{prefix}_policy_holder_name"),
        "birthday": _birthday(row, f"{prefix}_policy_holder_birthday"),
        "company": company,
        "companyAddress": _text(row, f"{prefix}_company_address"),
        "city": _text(row, f"{prefix}_city"),
        "province": _text(row, f"{prefix}_province"),
        "postalCode": build_postal_code(row.get(f"{prefix}_postal_code_1"), row.get(f"{prefix}_postal_code_2")),
        "groupNumber": _text(row, f"{prefix}_group_number"),
        "certificateNumber": _text(row, f"{prefix}_certificate_number"),
        "coverage": dict(EMPTY_COVERAGE),
    }]


def transform_client(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a (policy-filtered) sb_clients row to a client document."""
    full_name = clean_text(row.get("sb_clients_name")) or " ".join(
        part for part in (_text(row, "sb_clients_first_name"), _text(row, "sb_clients_last_name")) if part
    )
    default_clinic = clean_text(row.get("sb_default_clinic"))

    phones = {}
    for kind in ("home", "cell", "work"):
        phone = build_phone(
            row.get(f"sb_clients_{kind}_country_code"),
            row.get(f"sb_clients_{kind}_area_code"),
            row.get(f"sb_clients_{kind}_phone_number"),
            row.get(f"sb_clients_{kind}_phone_extension"),
        )
        if phone:
            phones[kind] = phone

    return {
        "clientId": clean_text(row.get("sb_clients_id")),
        "clientKey": to_int(row.get("sb_clients_key")),
        "personalInfo": {
            "firstName": _text(row, "sb_clients_first_name"),
            "lastName": _text(row, "sb_clients_last_name"),
            "fullName": full_name,
            "fullNameForAutocomplete": clean_text(row.get("sb_clients_name_for_autocomplete")) or full_name,
            "birthday": _birthday(row, "sb_clients_birthday"),
            "gender": normalize_gender(row.get("sb_clients_gender")),
        },
        "contact": {
            "address": {
                "street": _text(row, "sb_clients_address"),
                "apartment": _text(row, "sb_clients_apartment"),
                "city": clean_text(row.get("sb_clients_city")),
                "province": clean_text(row.get("sb_clients_province")),
                "postalCode": build_postal_code(row.get("sb_clients_postal_code_1"), row.get("sb_clients_postal_code_2")),
            },
            "phones": phones,
            "email": _text(row, "sb_clients_email"),
            "company": _text(row, "sb_clients_company"),
            "companyOther": _text(row, "sb_clients_company_other"),
        },
        "medical": {
            "familyMD": _text(row, "sb_clients_family_md"),
            "referringMD": _text(row, "sb_clients_referring_md"),
            "csrName": _text(row, "sb_clients_csr_name"),
            "location": _text(row, "sb_clients_location"),
        },
        "insurance": _first_insurance(row),
        "clinics": [default_clinic] if default_clinic else [],
        "defaultClinic": default_clinic,
        "isActive": True,
        "dateCreated": parse_date(row.get("sb_clients_date_created")) or utcnow(),
        "referralType": to_int(row.get("sb_clients_referral_type"), 0),
        "referralSubtype": to_int(row.get("sb_clients_referral_subtype"), 0),
    }


def validate_client(doc: Dict[str, Any]) -> bool:
    address = doc["contact"]["address"]
    missing = [
        name for name, value in (
            ("id", doc.get("clientId")),
            ("first_name", doc["personalInfo"]["firstName"]),
            ("last_name", doc["personalInfo"]["lastName"]),
            ("city", address.get("city")),
            ("province", address.get("province")),
            ("default_clinic", doc.get("defaultClinic")),
        )
        if not value
    ]
    if missing:
        logger.warning(f"Invalid client {doc.get('clientId')}: missing {', '.join(missing)}")
        return False
    return True


class ClientMigration(BaseMigration):
    """sb_clients -> clients; skips clients that already exist."""

    table_name = "sb_clients"
    collection_name = "clients"
    natural_key = "clientId"
    page_size = 1000
    source_query = SourceQuery(
        table="sb_clients",
        columns=CLIENT_COLUMNS,
        where="sb_clients_id IS NOT NULL",
        predicate=not_null("sb_clients_id"),
        order_by="sb_clients_id",
    )
    indexes = (
        ("clientId", {"unique": True}),
        ([("defaultClinic", 1), ("personalInfo.lastName", 1)], {}),
        ("personalInfo.fullNameForAutocomplete", {}),
        ("contact.email", {}),
        ([("isActive", 1), ("dateCreated", -1)], {}),
    )
    required_fields = ("clientId", "personalInfo.lastName", "defaultClinic")
    statistics_filters = {
        "active": {"isActive": True},
        "with_insurance": {"insurance.0": {"$exists": True}},
    }

    def filter_rows(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = self.data_filter.filter_records_by_clinic(rows, clinic_field="sb_default_clinic")
        kept = [self.data_filter.filter_client_data(row) for row in kept]
        self.data_filter.log_filter_stats(len(rows), len(kept), "Client records")
        return kept

    def transform_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return transform_client(row)

    def validate_record(self, doc: Dict[str, Any]) -> bool:
        return validate_client(doc)

    async def migrate(self) -> MigrationResult:
        runner = self.build_runner(
            transform=transform_client,
            validate=validate_client,
            row_filter=self.filter_rows,
            describe=lambda row: row.get("sb_clients_id"),
            write_mode=WriteMode.SKIP_EXISTING,
            page_size=self.page_size,
        )
        return await self.run_pipeline(runner)
