"""Integration tests for CLI commands."""

import json
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from mini_lightrag.cli import app
from mini_lightrag.core.errors import StoreError

runner = CliRunner()


def write_config(tmp_path, dimension=256, backend="hashing", name="config.yaml"):
    config = tmp_path / name
    config.write_text(
        yaml.safe_dump(
            {
                "system": {"log_level": "ERROR"},
                "database": {"path": str(tmp_path / "db"), "vector_dimension": dimension},
                "embedding": {"backend": backend},
                "graph": {"similarity_threshold": 0.1},
            }
        )
    )
    return str(config)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "src" / "total.ts").write_text(
        "export function calculateTotal(numbers: number[]): number {\n"
        "  return numbers.reduce((sum, n) => sum + n, 0);\n"
        "}\n"
    )
    (root / "README.md").write_text("# Totals\n\nUse calculateTotal to sum numbers.\n")
    return root


@pytest.fixture
def config_file(tmp_path):
    return write_config(tmp_path)


@pytest.fixture
def indexed(config_file, workspace):
    result = runner.invoke(app, ["--config-file", config_file, "index", str(workspace)])
    assert result.exit_code == 0, result.output
    return config_file


class TestGlobalOptions:
    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "mini-lightrag version:" in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])

        assert "Usage" in result.output

    def test_unknown_backend_exits_cleanly(self, tmp_path):
        config = write_config(tmp_path, backend="nope")

        result = runner.invoke(app, ["--config-file", config, "stats"])

        assert result.exit_code == 1
        assert "Unknown embedding backend" in result.output


class TestIndexCommand:
    """Tests for the index command."""

    def test_index_reports_counts(self, config_file, workspace):
        result = runner.invoke(app, ["--config-file", config_file, "index", str(workspace)])

        assert result.exit_code == 0, result.output
        assert "Indexed 2 files" in result.output
        assert "2 added" in result.output

    def test_reindex_is_unchanged(self, indexed, workspace):
        result = runner.invoke(app, ["--config-file", indexed, "index", str(workspace)])

        assert result.exit_code == 0, result.output
        assert "2 unchanged" in result.output

    def test_force(self, indexed, workspace):
        result = runner.invoke(app, ["--config-file", indexed, "index", "--force", str(workspace)])

        assert result.exit_code == 0, result.output
        assert "2 added" in result.output

    def test_missing_directory(self, config_file, tmp_path):
        result = runner.invoke(
            app, ["--config-file", config_file, "index", str(tmp_path / "missing")]
        )

        assert result.exit_code == 1
        assert "not a directory" in result.output

    def test_dimension_change_reports_schema_mismatch(self, indexed, tmp_path, workspace):
        other = write_config(tmp_path, dimension=128, name="other.yaml")

        result = runner.invoke(app, ["--config-file", other, "index", str(workspace)])

        assert result.exit_code == 1
        assert "[!] Database Error" in result.output


class TestSearchCommand:
    """Tests for the search command."""

    def test_search_prints_citations(self, indexed):
        result = runner.invoke(app, ["--config-file", indexed, "search", "calculate total"])

        assert result.exit_code == 0, result.output
        assert "Result 1 of" in result.output
        assert "src/total.ts:1-3" in result.output

    def test_search_json(self, indexed):
        result = runner.invoke(
            app, ["--config-file", indexed, "search", "calculate total", "--json", "--limit", "1"]
        )

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert len(payload["results"]) == 1
        assert payload["metadata"]["weights"]["vector"] == 0.6

    def test_search_filters(self, indexed):
        result = runner.invoke(
            app,
            ["--config-file", indexed, "search", "calculate total", "--json", "-L", "markdown"],
        )

        payload = json.loads(result.output)
        assert {r["chunk"]["language"] for r in payload["results"]} == {"markdown"}

    def test_no_results(self, indexed):
        result = runner.invoke(
            app, ["--config-file", indexed, "search", "calculate total", "--min-score", "0.99"]
        )

        assert result.exit_code == 0
        assert "No results found" in result.output

    def test_blank_query_is_an_error(self, indexed):
        result = runner.invoke(app, ["--config-file", indexed, "search", "   "])

        assert result.exit_code == 1
        assert "Query text cannot be empty" in result.output


class TestInspectionCommands:
    """Tests for stats, graph and purge."""

    def test_stats(self, indexed):
        result = runner.invoke(app, ["--config-file", indexed, "stats"])

        assert result.exit_code == 0, result.output
        assert "active, 0 tombstoned" in result.output
        assert "Ready: True" in result.output

    def test_graph_summary(self, indexed):
        result = runner.invoke(app, ["--config-file", indexed, "graph"])

        assert result.exit_code == 0, result.output
        assert result.output.startswith("Nodes: ")

    def test_graph_related_unknown_node(self, indexed):
        result = runner.invoke(app, ["--config-file", indexed, "graph", "--related", "chunk:nope"])

        assert result.exit_code == 0
        assert "No nodes related to chunk:nope" in result.output

    def test_graph_path_missing(self, indexed):
        result = runner.invoke(
            app,
            ["--config-file", indexed, "graph", "--related", "chunk:a", "--path-to", "chunk:b"],
        )

        assert result.exit_code == 0
        assert "No path from chunk:a to chunk:b" in result.output

    def test_purge(self, indexed):
        result = runner.invoke(app, ["--config-file", indexed, "purge"])

        assert result.exit_code == 0, result.output
        assert "Purged 0 tombstoned chunks" in result.output

    @pytest.mark.parametrize(
        "command, method",
        [
            (["stats"], "get_system_stats"),
            (["graph"], "analyze_graph"),
            (["purge"], "purge_tombstones"),
        ],
    )
    def test_store_failure_exits_cleanly(self, indexed, command, method):
        with patch(
            f"mini_lightrag.services.orchestrator.Orchestrator.{method}",
            side_effect=StoreError("lance read failed"),
        ):
            result = runner.invoke(app, ["--config-file", indexed, *command])

        assert result.exit_code == 1
        assert "Error: lance read failed" in result.output
        assert not isinstance(result.exception, StoreError)
