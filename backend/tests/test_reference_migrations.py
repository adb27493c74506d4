"""
Tests for InsuranceCompanyAddressMigration and InsuranceReferenceMigration.
"""
import pytest

from services.migration.insurance_company_addresses import (
    InsuranceCompanyAddressMigration, has_valid_postal_code, transform_address, validate_address
)
from services.migration.insurance_reference import (
    InsuranceReferenceMigration, map_cob_status, map_frequency_type, map_policy_holder_type
)
from services.migration.job import MigrationOptions
from services.migration.sources import InMemoryQueryExecutor


def address_row(key, **overrides):
    row = {
        "sb_1st_insurance_company_address_key": key,
        "sb_1st_insurance_company_address_name": "Head Office",
        "sb_1st_insurance_company_name": "Sun Life",
        "sb_1st_insurance_company_city": "Waterloo",
        "sb_1st_insurance_company_province": "ON",
        "sb_1st_insurance_company_postalCode_first3Digits": "n2j ",
        "sb_1st_insurance_company_postalCode_last3Digits": "4a9",
    }
    row.update(overrides)
    return row


def reference_source():
    return InMemoryQueryExecutor({
        "sb_insurance_frequency": [
            {"sb_insurance_frequency_key": 1, "sb_insurance_frequency_name": "Select"},
            {"sb_insurance_frequency_key": 2, "sb_insurance_frequency_name": "1 per calendar year"},
            {"sb_insurance_frequency_key": 3, "sb_insurance_frequency_name": "Rolling year"},
        ],
        "sb_insurance_policy_holder": [
            {"sb_insurance_policy_holder_key": 1, "sb_insurance_policy_holder_name": "Self"},
            {"sb_insurance_policy_holder_key": 2, "sb_insurance_policy_holder_name": "Spouse"},
        ],
        "sb_insurance_cob": [
            {"sb_insurance_cob_key": 1, "sb_insurance_cob_name": "YES"},
            {"sb_insurance_cob_key": 2, "sb_insurance_cob_name": "NO"},
        ],
    })


class TestAddressTransforms:
    """Tests for insurance company address transforms."""

    def test_transform(self):
        """Test an address row maps onto the destination document."""
        doc = transform_address(address_row(12))
        assert doc["addressKey"] == 12
        assert doc["postalCodeFirst3"] == "N2J"
        assert doc["fullPostalCode"] == "N2J 4A9"

    @pytest.mark.parametrize("first,last,expected", [
        ("N2J", "4A9", True),
        ("N2J", None, False),
        ("123", "4A9", False),
        ("N2J", "ABC", False),
    ])
    def test_postal_code(self, first, last, expected):
        """Test the postal code check on address rows."""
        doc = transform_address(address_row(
            1,
            sb_1st_insurance_company_postalCode_first3Digits=first,
            sb_1st_insurance_company_postalCode_last3Digits=last,
        ))
        assert has_valid_postal_code(doc) is expected

    def test_validation(self):
        """Test address validation."""
        assert validate_address(transform_address(address_row(1))) is True
        assert validate_address(transform_address(address_row(1, sb_1st_insurance_company_city=""))) is False


class TestReferenceMappers:
    """Tests for the lookup type mappers."""

    @pytest.mark.parametrize("name,expected", [
        ("Select", "SELECT"),
        ("Annual", "YEARLY"),
        ("Continuous", "ROLLING"),
        ("2", "NUMERIC"),
        (None, "NUMERIC"),
    ])
    def test_frequency(self, name, expected):
        """Test frequency names map onto FrequencyType."""
        assert map_frequency_type(name) == expected

    @pytest.mark.parametrize("name,expected", [
        ("", "NONE"),
        ("None", "NONE"),
        ("Patient", "SELF"),
        ("Partner", "SPOUSE"),
        ("Mother", "PARENT"),
        ("Daughter", "CHILD"),
        ("Employer", "OTHER"),
    ])
    def test_policy_holder(self, name, expected):
        """Test policy holder names map onto PolicyHolderType."""
        assert map_policy_holder_type(name) == expected

    @pytest.mark.parametrize("name,expected", [("Yes", "YES"), ("1", "YES"), ("No", "NO"), (None, "NO")])
    def test_cob(self, name, expected):
        """Test COB names map onto COBStatus."""
        assert map_cob_status(name) == expected

    def test_transform_record_picks_table_by_key_column(self):
        """Test transform_record and validate_record dispatch on the row's lookup table."""
        migration = InsuranceReferenceMigration()

        doc = migration.transform_record({"sb_insurance_cob_key": 3, "sb_insurance_cob_name": "True"})

        assert doc["cobKey"] == 3
        assert doc["cobStatus"] == "YES"
        assert migration.validate_record(doc) is True
        assert migration.validate_record({"cobKey": None}) is False
        assert migration.validate_record({"unknown": 1}) is False
        with pytest.raises(ValueError):
            migration.transform_record({"unknown_key": 1})


@pytest.mark.asyncio
class TestAddressMigration:
    """Tests for InsuranceCompanyAddressMigration.execute()."""

    async def test_filters(self, mongo_db, data_filter):
        """Test address postal code and test-data filters."""
        rows = [
            address_row(1),
            address_row(2, sb_1st_insurance_company_name="Test Insurance"),
            address_row(3, sb_1st_insurance_company_postalCode_first3Digits="999"),
            address_row(4),
        ]
        source = InMemoryQueryExecutor({"sb_1st_insurance_company_address": rows})

        result = await InsuranceCompanyAddressMigration(mongo_db, source, MigrationOptions(), data_filter).execute()

        assert result.migrated_records == 2
        assert sorted(d["addressKey"] for d in mongo_db["insurancecompanyaddresses"].documents) == [1, 4]


@pytest.mark.asyncio
class TestInsuranceReferenceMigration:
    """Tests for InsuranceReferenceMigration.execute()."""

    async def test_migrates_three_lookups(self, mongo_db, data_filter):
        """Test all three lookup tables are migrated."""
        migration = InsuranceReferenceMigration(mongo_db, reference_source(), MigrationOptions(), data_filter)

        result = await migration.execute()

        assert result.success is True
        assert result.total_records == 7
        assert result.migrated_records == 7
        frequencies = mongo_db["insurancefrequencies"].documents
        assert [d["frequencyType"] for d in frequencies] == ["SELECT", "NUMERIC", "ROLLING"]
        assert [d["cobStatus"] for d in mongo_db["insurancecobs"].documents] == ["YES", "NO"]
        assert ("policyHolderKey", {"unique": True}) in mongo_db["insurancepolicyholders"].indexes

    async def test_rerun_updates_and_keeps_date_created(self, mongo_db, data_filter):
        """Test a rerun updates lookups and keeps dateCreated."""
        first = InsuranceReferenceMigration(mongo_db, reference_source(), MigrationOptions(), data_filter)
        await first.execute()
        created = mongo_db["insurancecobs"].documents[0]["dateCreated"]

        result = await InsuranceReferenceMigration(
            mongo_db, reference_source(), MigrationOptions(), data_filter
        ).execute()

        assert result.inserted_records == 0
        assert result.updated_records == 7
        assert len(mongo_db["insurancecobs"].documents) == 2
        assert mongo_db["insurancecobs"].documents[0]["dateCreated"] == created

    async def test_validation_and_summary(self, mongo_db, data_filter):
        """Test validation report and summary per collection."""
        migration = InsuranceReferenceMigration(mongo_db, reference_source(), MigrationOptions(), data_filter)
        await migration.execute()

        report = await migration.validate_migration()
        summary = await migration.get_migration_summary()

        assert report["insurancefrequencies_total"] == 3
        assert report["insurancecobs_invalid"] == 0
        assert summary["insurancepolicyholders"]["total"] == 2
        assert summary["integrity"] == {"has_valid_data": True, "issues": []}

    async def test_sample_records(self, data_filter):
        """Test samples are taken from each lookup table."""
        migration = InsuranceReferenceMigration(None, reference_source(), MigrationOptions(), data_filter)
        samples = await migration.get_sample_records(1)
        assert [s.get("frequencyKey") or s.get("policyHolderKey") or s.get("cobKey") for s in samples] == [1, 1, 1]
