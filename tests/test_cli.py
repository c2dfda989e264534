"""Tests for the locus-sync command line."""

import json

import pytest
from typer.testing import CliRunner

from locus_sync.cli import app
from locus_sync.sync import UploadQueue

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """YAML config pointing the queue at a temporary directory, no endpoint."""
    path = tmp_path / "locus.yaml"
    path.write_text(f"data_dir: {tmp_path}\n")
    return path


@pytest.fixture
def seeded(tmp_path, config_file):
    """Two queued items and one dead-letter entry."""
    queue = UploadQueue(tmp_path / "queue.db")
    queue.enqueue({"n": 1}, type="location")
    queue.enqueue({"n": 2})
    queue.record_dead_letter({"n": 0}, attempts=4, type="location")
    queue.close()
    return config_file


class TestCli:
    """Tests for the inspection and maintenance commands."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "locus-sync" in result.stdout

    def test_status_json(self, seeded):
        result = runner.invoke(app, ["--config", str(seeded), "status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["pending"] == 2
        assert data["dead_letter"] == 1
        assert data["url"] is None

    def test_status_human(self, seeded):
        result = runner.invoke(app, ["--config", str(seeded), "status"])
        assert result.exit_code == 0
        assert "2 pending" in result.stdout
        assert "Dead letter: 1" in result.stdout

    def test_queue_json(self, seeded):
        result = runner.invoke(app, ["--config", str(seeded), "queue", "--json"])

        assert result.exit_code == 0
        items = json.loads(result.stdout)
        assert [item["payload"] for item in items] == [{"n": 1}, {"n": 2}]
        assert items[0]["type"] == "location"

    def test_empty_queue(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "queue"])
        assert result.exit_code == 0
        assert "Queue is empty" in result.stdout

    def test_dead_letter_json_and_purge(self, seeded):
        result = runner.invoke(app, ["--config", str(seeded), "dead-letter", "--json", "--purge"])

        assert result.exit_code == 0
        [entry] = json.loads(result.stdout)
        assert entry["attempts"] == 4
        assert entry["payload"] == {"n": 0}

        result = runner.invoke(app, ["--config", str(seeded), "dead-letter"])
        assert "Dead-letter log is empty" in result.stdout

    def test_clear(self, seeded, tmp_path):
        result = runner.invoke(app, ["--config", str(seeded), "clear", "--yes"])

        assert result.exit_code == 0
        assert "Removed 2 items" in result.stdout
        queue = UploadQueue(tmp_path / "queue.db")
        assert queue.count() == 0
        assert len(queue.read_dead_letter()) == 1
        queue.close()

    def test_sync_requires_endpoint(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "sync"])
        assert result.exit_code == 1
        assert "No endpoint configured" in result.stdout
