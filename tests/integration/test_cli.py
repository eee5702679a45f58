"""CLI commands run end to end against a CSV datasource."""

import json
import logging

import pytest
import structlog
from click.testing import CliRunner
from crawlstream.cli import cli
from tests.helpers.csv_files import part, write_parts


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def workspace(tmp_path):
    parts = write_parts(tmp_path / "parts.csv", [part(n) for n in range(1, 6)])
    config = tmp_path / "crawlstream.yaml"
    config.write_text(
        "\n".join(
            [
                "source:",
                "  name: csv",
                f"  datasource_url: {parts}",
                "crawl:",
                "  page_size: 2",
                "  retry_delay_seconds: 0",
                "checkpoint:",
                f"  path: {tmp_path / 'checkpoints.json'}",
                "monitoring:",
                "  log_level: ERROR",
                "",
            ]
        )
    )
    return tmp_path


def run(workspace, *args):
    return CliRunner().invoke(cli, ["--config", str(workspace / "crawlstream.yaml"), "--log-level", "ERROR", *args])


def read_bits(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.mark.integration
class TestCrawlCommand:
    def test_full_crawl_writes_json_lines(self, workspace):
        out = workspace / "out.jsonl"
        result = run(workspace, "crawl", "-o", str(out))

        assert result.exit_code == 0, result.output
        bits = read_bits(out)
        assert [b["item"]["item_id"] for b in bits if b["item"]] == ["1", "2", "3", "4", "5"]
        assert bits[-1]["status"]["result"] == "success"
        # a finished full crawl leaves nothing to resume
        assert json.loads((workspace / "checkpoints.json").read_text()) == {}

    def test_resumes_from_stored_checkpoint(self, workspace):
        key = f"csv:full:{workspace / 'parts.csv'}"
        (workspace / "checkpoints.json").write_text(json.dumps({key: "3"}))
        out = workspace / "out.jsonl"

        result = run(workspace, "crawl", "-o", str(out))

        assert result.exit_code == 0, result.output
        assert [b["item"]["item_id"] for b in read_bits(out) if b["item"]] == ["4", "5"]

    def test_no_resume_starts_over(self, workspace):
        key = f"csv:full:{workspace / 'parts.csv'}"
        (workspace / "checkpoints.json").write_text(json.dumps({key: "3"}))
        out = workspace / "out.jsonl"

        result = run(workspace, "crawl", "--no-resume", "-o", str(out))

        assert result.exit_code == 0, result.output
        assert len([b for b in read_bits(out) if b["item"]]) == 5

    def test_explicit_checkpoint_and_page_size(self, workspace):
        out = workspace / "out.jsonl"
        result = run(workspace, "crawl", "--checkpoint", "4", "--page-size", "1", "-o", str(out))

        assert result.exit_code == 0, result.output
        assert [b["item"]["item_id"] for b in read_bits(out) if b["item"]] == ["5"]

    def test_missing_datasource_exits_nonzero(self, workspace):
        out = workspace / "out.jsonl"
        result = run(workspace, "crawl", "--datasource-url", str(workspace / "missing.csv"), "-o", str(out))

        assert result.exit_code == 1
        assert read_bits(out)[-1]["status"]["result"] == "auth_fault"

    def test_incremental_on_csv_is_a_source_fault(self, workspace):
        out = workspace / "out.jsonl"
        result = run(workspace, "incremental", "-o", str(out))

        assert result.exit_code == 1
        assert read_bits(out)[-1]["status"]["result"] == "source_fault"

    def test_invalid_since(self, workspace):
        result = run(workspace, "incremental", "--since", "tomorrow-ish")
        assert result.exit_code == 2


@pytest.mark.integration
class TestInspectionCommands:
    def test_schema_as_json(self, workspace):
        result = run(workspace, "schema", "--json")

        assert result.exit_code == 0, result.output
        rows = {row["name"]: row for row in json.loads(result.output)}
        assert rows["PartNumber"]["type"] == "int64"
        assert rows["Appliances"]["type"] == "string_collection"

    def test_schema_table(self, workspace):
        result = run(workspace, "schema", "--source", "github")

        assert result.exit_code == 0, result.output
        assert "UpdatedAt" in result.output

    def test_validate_config(self, workspace):
        custom = '{"AdditionalParameters": {"QueryParameters": {"state": "open"}}}'
        result = run(workspace, "validate-config", "--custom-config", custom)

        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary["connector"]["source"] == "csv"
        assert summary["crawl"]["page_size"] == 2
        assert summary["custom_configuration"]["result"] == "success"

    def test_validate_config_rejects_bad_json(self, workspace):
        result = run(workspace, "validate-config", "--custom-config", "{nope")

        assert result.exit_code == 1
        assert json.loads(result.output)["custom_configuration"]["result"] == "validation_fault"

    def test_bad_config_file(self, tmp_path):
        config = tmp_path / "broken.yaml"
        config.write_text("crawl:\n  page_size: 0\n")
        result = CliRunner().invoke(cli, ["--config", str(config), "schema"])

        assert result.exit_code == 1
        assert "Could not load configuration" in result.output
