"""
Tests for the clinic-migrate command line.
"""
import json

import pytest

from conftest import MockAsyncDatabase, MockMotorClient
from services.migration import cli, manager as manager_module


@pytest.fixture
def mongo(monkeypatch):
    db = MockAsyncDatabase()
    clients = []

    def fake_client(url):
        client = MockMotorClient(db)
        clients.append(client)
        return client

    monkeypatch.setattr(manager_module, "AsyncIOMotorClient", fake_client)
    return db, clients


@pytest.fixture
def export_file(tmp_path):
    path = tmp_path / "export.json"
    path.write_text(json.dumps({
        "source_name": "clinic export",
        "tables": {
            "sb_clients": [
                {
                    "sb_clients_id": "C1",
                    "sb_clients_first_name": "Ana",
                    "sb_clients_last_name": "Silva",
                    "sb_clients_city": "Toronto",
                    "sb_clients_province": "ON",
                    "sb_default_clinic": "Century Care",
                },
            ],
        },
    }))
    return str(path)


class TestParser:
    """Tests for argument parsing."""

    def test_defaults(self):
        """Test parser defaults."""
        args = cli.build_parser().parse_args([])
        assert args.migration is None
        assert args.dry_run is False
        assert args.force is False

    def test_options_from_flags(self):
        """Test flags flow into the manager options."""
        args = cli.build_parser().parse_args(["clients", "--dry-run", "--batch-size", "50"])
        manager = cli.build_manager(args)
        assert manager.options.dry_run is True
        assert manager.options.batch_size == 50


class TestMain:
    """Tests for cli.main exit codes and side effects."""

    def test_list(self, mongo):
        """Test --list exits cleanly without connecting to MongoDB."""
        _, clients = mongo
        assert cli.main(["--list"]) == 0
        assert clients == []

    def test_list_prints_plan_below_info_level(self, mongo, capsys):
        """Test --list prints the execution order even when INFO logs are hidden."""
        assert cli.main(["--list", "--log-level", "WARNING"]) == 0

        out = capsys.readouterr().out
        assert "Migration execution order" in out
        assert "clients" in out
        assert "appointments" in out

    def test_unknown_migration(self, mongo):
        """Test an unknown migration key exits with 1."""
        assert cli.main(["no_such_table"]) == 1

    def test_rejects_bad_batch_size(self):
        """Test a non-positive batch size exits with 1."""
        assert cli.main(["--batch-size", "0"]) == 1

    def test_single_migration_dry_run(self, mongo, export_file):
        """Test a dry run writes nothing and closes the client."""
        db, clients = mongo

        assert cli.main(["clients", "--dry-run", "--source-file", export_file]) == 0

        assert db["clients"].documents == []
        assert clients[0].closed is True

    def test_single_migration_writes(self, mongo, export_file):
        """Test a single migration writes from a JSON export."""
        db, _ = mongo

        assert cli.main(["clients", "--source-file", export_file]) == 0

        assert [d["clientId"] for d in db["clients"].documents] == ["C1"]

    def test_full_run(self, mongo, export_file):
        """Test a full run uses one client for every migration."""
        db, clients = mongo

        assert cli.main(["--source-file", export_file]) == 0

        assert len(db["clients"].documents) == 1
        assert len(clients) == 1

    def test_missing_source_file(self, mongo, tmp_path):
        """Test a missing export file exits with 1."""
        assert cli.main(["clients", "--source-file", str(tmp_path / "missing.json")]) == 1
