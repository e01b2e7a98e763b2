"""
Unit tests for the dbconverge CLI interface.

Commands that reach the database run against the in-memory catalog by
patching ``_run_with_reconciler``.
"""

import asyncio
import os

import pytest
import yaml
from unittest.mock import patch

from click.testing import CliRunner

from dbconverge.cli import (
    EXIT_BROKEN_REFERENCE,
    EXIT_CONFLICT,
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    EXIT_PARTIAL,
    main,
)


CORE_YAML = """
module: core
tables:
  store:
    columns:
      id: {type: integer, auto_increment: true}
      code: {type: "varchar(32)", nullable: false}
    constraints:
      store_pkey: {type: primary, columns: [id]}
"""

CATALOG_YAML = """
module: catalog
version: "1.0.0"
sequence: [core]
tables:
  product:
    columns:
      id: {type: integer, auto_increment: true}
      store_id: {type: integer, nullable: false}
    constraints:
      product_pkey: {type: primary, columns: [id]}
      product_store_fk:
        type: foreign
        column: store_id
        referenced_table: store
        referenced_column: id
"""


@pytest.fixture
def runner():
    """Click test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("dbconverge.cli.configure_logging"):
        yield


@pytest.fixture
def project(tmp_path):
    """Configuration file plus a declarations directory with two modules."""
    declarations = tmp_path / "declarations"
    declarations.mkdir()
    (declarations / "core.yaml").write_text(CORE_YAML)
    (declarations / "catalog.yaml").write_text(CATALOG_YAML)

    config_path = tmp_path / "dbconverge.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "database": {"database": "app", "user": "app"},
                "declarations": {
                    "path": str(declarations),
                    "whitelist_dir": str(tmp_path / "whitelist"),
                },
            }
        )
    )
    return tmp_path


def invoke(runner, project, *args, **kwargs):
    return runner.invoke(main, ["-c", str(project / "dbconverge.yaml"), *args], **kwargs)


@pytest.fixture
def in_memory(catalog, ledger):
    """Route database-backed commands to the in-memory catalog."""
    def run(config, mode, action):
        return asyncio.run(action(catalog.reconciler(ledger, mode)))

    with patch("dbconverge.cli._run_with_reconciler", side_effect=run):
        yield catalog


class TestCLIMain:
    """Test main CLI functionality."""

    def test_cli_help(self, runner):
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "Declarative multi-module schema reconciliation" in result.output

    def test_cli_version(self, runner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_schema_help(self, runner):
        result = runner.invoke(main, ["schema", "--help"])

        assert result.exit_code == 0
        for command in ("plan", "apply", "uninstall", "status"):
            assert command in result.output


class TestInitCommand:
    """Test init command functionality."""

    def test_init_creates_config(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(main, ["init", "--output", "conf.yaml"])

            assert result.exit_code == 0
            assert "Configuration file created" in result.output
            data = yaml.safe_load(open("conf.yaml"))
            assert data["database"]["host"] == "${POSTGRES_HOST}"
            assert data["reconcile"]["target_schema"] == "public"
            assert os.path.isdir("declarations")

    def test_init_keeps_existing_file_when_declined(self, runner):
        with runner.isolated_filesystem():
            with open("conf.yaml", "w") as f:
                f.write("keep: me\n")

            result = runner.invoke(main, ["init", "--output", "conf.yaml"], input="n\n")

            assert result.exit_code == 0
            assert open("conf.yaml").read() == "keep: me\n"


class TestValidateConfigCommand:
    """Test validate-config command."""

    def test_valid_project(self, runner, project):
        result = invoke(runner, project, "validate-config")

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "2 module declarations merge cleanly" in result.output

    def test_missing_config(self, runner, tmp_path):
        result = runner.invoke(main, ["-c", str(tmp_path / "absent.yaml"), "validate-config"])

        assert result.exit_code == EXIT_ERROR
        assert "Configuration file not found" in result.output

    def test_conflicting_declarations(self, runner, project):
        (project / "declarations" / "rival.yaml").write_text(
            CORE_YAML.replace("module: core", "module: rival").replace(
                "varchar(32)", "varchar(64)"
            )
        )

        result = invoke(runner, project, "validate-config")

        assert result.exit_code == EXIT_CONFLICT
        assert "Schema conflict" in result.output

    def test_broken_reference(self, runner, project):
        (project / "declarations" / "core.yaml").unlink()
        (project / "declarations" / "catalog.yaml").write_text(
            CATALOG_YAML.replace("sequence: [core]\n", "")
        )

        result = invoke(runner, project, "validate-config")

        assert result.exit_code == EXIT_BROKEN_REFERENCE
        assert "Invalid schema" in result.output


class TestSchemaCommands:
    """Test plan, apply, uninstall and status."""

    def test_plan(self, runner, project, in_memory):
        result = invoke(runner, project, "schema", "plan")

        assert result.exit_code == 0
        assert "Planned Operations" in result.output
        assert "CreateTable" in result.output
        assert in_memory.applied == []

    def test_plan_sql(self, runner, project, in_memory):
        result = invoke(runner, project, "schema", "plan", "--sql")

        assert result.exit_code == 0
        assert 'CREATE TABLE "public"."store"' in result.output

    def test_plan_unknown_module(self, runner, project, in_memory):
        result = invoke(runner, project, "schema", "plan", "--module", "nope")

        assert result.exit_code == EXIT_ERROR
        assert "Unknown module 'nope'" in result.output

    def test_apply_then_up_to_date(self, runner, project, in_memory):
        result = invoke(runner, project, "schema", "apply")

        assert result.exit_code == 0
        assert "Schema converged" in result.output
        assert set(in_memory.live.tables) == {"store", "product"}

        again = invoke(runner, project, "schema", "apply")
        assert again.exit_code == 0
        assert "up to date" in again.output

        plan = invoke(runner, project, "schema", "plan")
        assert "No changes needed" in plan.output

    def test_apply_dry_run(self, runner, project, in_memory):
        result = invoke(runner, project, "schema", "apply", "--dry-run")

        assert result.exit_code == 0
        assert "DRY RUN" in result.output
        assert in_memory.live.tables == {}

    def test_apply_partial_exit_code(self, runner, project, in_memory):
        in_memory.fail_on.add("CreateTable(product)")

        result = invoke(runner, project, "schema", "apply")

        assert result.exit_code == EXIT_PARTIAL
        assert "product: failed" in result.output

    def test_uninstall_still_declared_module(self, runner, project, in_memory):
        invoke(runner, project, "schema", "apply")

        result = invoke(runner, project, "schema", "uninstall", "catalog")

        assert result.exit_code == 0
        assert "product" not in in_memory.live.tables
        assert "still declared" in result.output

    def test_uninstall_unknown_module(self, runner, project, in_memory):
        result = invoke(runner, project, "schema", "uninstall", "nope")

        assert result.exit_code == EXIT_ERROR
        assert "Unknown module 'nope'" in result.output

    def test_status(self, runner, project, in_memory):
        before = invoke(runner, project, "schema", "status")
        assert before.exit_code == 0
        assert "PostgreSQL 16.0 (testdb)" in before.output
        assert "No successful apply recorded" in before.output
        assert "Target schema does not exist yet" in before.output

        invoke(runner, project, "schema", "apply")
        after = invoke(runner, project, "schema", "status")

        assert after.exit_code == 0
        assert "Applied hash" in after.output
        assert "does not exist yet" not in after.output
        assert "catalog" in after.output

    def test_missing_database_section(self, runner, project):
        config_path = project / "dbconverge.yaml"
        data = yaml.safe_load(config_path.read_text())
        del data["database"]
        config_path.write_text(yaml.safe_dump(data))

        result = invoke(runner, project, "schema", "plan")

        assert result.exit_code == EXIT_ERROR
        assert "No database connection configured" in result.output

    def test_interrupt(self, runner, project):
        with patch("dbconverge.cli._load_contributions", side_effect=KeyboardInterrupt):
            result = invoke(runner, project, "schema", "apply")

        assert result.exit_code == EXIT_INTERRUPTED
        assert "Interrupted" in result.output
