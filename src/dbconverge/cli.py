"""
Command-line interface for dbconverge.
"""

import asyncio
import sys
from functools import wraps
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import DatabaseConnection, DbconvergeConfig
from .declarations import load_declarations
from .exceptions import (
    ConfigurationError,
    CyclicDependencyError,
    DbconvergeError,
    ReferentialIntegrityError,
    SchemaConflictError,
)
from .observability import configure_logging
from .database.connection import ConnectionConfig, ConnectionPool
from .schema.diff import OwnershipViolation, validate_references
from .schema.executor import OperationMode, ReconciliationStatus
from .schema.ledger import FileWhitelistStore, OwnershipLedger
from .schema.merger import merge_contributions
from .schema.model import ModuleContribution
from .schema.operations import SchemaOperation
from .schema.reconciler import ReconciliationResult, SchemaReconciler


console = Console()

EXIT_OK = 0
EXIT_CONFLICT = 1
EXIT_BROKEN_REFERENCE = 2
EXIT_PARTIAL = 3
EXIT_ERROR = 4
EXIT_INTERRUPTED = 130

T = TypeVar("T")


def handle_errors(func):
    """Decorator mapping dbconverge errors to exit codes in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SchemaConflictError as e:
            console.print(f"[red]Schema conflict:[/red] {e}")
            sys.exit(EXIT_CONFLICT)
        except (ReferentialIntegrityError, CyclicDependencyError) as e:
            console.print(f"[red]Invalid schema:[/red] {e}")
            sys.exit(EXIT_BROKEN_REFERENCE)
        except DbconvergeError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(EXIT_ERROR)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(EXIT_INTERRUPTED)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {e}")
            ctx = click.get_current_context(silent=True)
            if ctx is not None and ctx.find_root().obj and ctx.find_root().obj.get("debug"):
                import traceback
                traceback.print_exc()
            sys.exit(EXIT_ERROR)
    return wrapper


@click.group()
@click.version_option(__version__)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(),
    default="dbconverge.yaml",
    envvar="DBCONVERGE_CONFIG",
    show_default=True,
    help="Configuration file path",
)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, config_path, debug):
    """dbconverge: Declarative multi-module schema reconciliation for PostgreSQL."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["debug"] = debug


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="dbconverge.yaml",
    help="Output configuration file path",
)
@handle_errors
def init(output: str):
    """Initialize a new dbconverge configuration file."""
    if Path(output).exists():
        if not click.confirm(f"Configuration file {output} already exists. Overwrite?"):
            return

    config = _create_default_config()
    config.to_yaml(output)
    Path(config.declarations.path).mkdir(parents=True, exist_ok=True)

    console.print(f"[green]✓[/green] Configuration file created: {output}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Edit the configuration file with your database details")
    console.print(f"2. Add one YAML declaration per module under {config.declarations.path}/")
    console.print("3. Run: dbconverge validate-config")
    console.print("4. Run: dbconverge schema plan")


@main.command()
@click.pass_context
@handle_errors
def validate_config(ctx):
    """Validate the configuration file and module declarations."""
    path = ctx.obj["config_path"]
    console.print(f"Validating configuration: {path}")

    config = _load_config(ctx)
    console.print("[green]✓[/green] Configuration is valid")
    _display_config_summary(config)

    if Path(config.declarations.path).is_dir():
        contributions = load_declarations(config.declarations.path, config.declarations.pattern)
        logical = merge_contributions(contributions)
        validate_references(logical)
        console.print(
            f"[green]✓[/green] {len(contributions)} module declarations merge cleanly "
            f"({len(logical.tables)} tables)"
        )
    else:
        console.print(
            f"[yellow]Declarations directory {config.declarations.path} not found[/yellow]"
        )


@main.group()
def schema():
    """Plan and apply schema changes."""


@schema.command("plan")
@click.option("--module", "-m", "module", help="Only show operations for this module")
@click.option("--sql", "show_sql", is_flag=True, help="Show the SQL for each operation")
@click.pass_context
@handle_errors
def schema_plan(ctx, module: Optional[str], show_sql: bool):
    """Show the ordered operations needed to converge the database."""
    config = _load_config(ctx)
    contributions = _load_contributions(config)

    async def run_plan(reconciler: SchemaReconciler):
        plan = await reconciler.plan(contributions)
        operations = plan.operations
        if module:
            known = {c.module for c in contributions} | set(reconciler.ledger.modules)
            if module not in known:
                raise ConfigurationError(f"Unknown module '{module}'")
            operations = plan.for_module(module, reconciler.ledger)

        _display_warnings(plan.warnings)
        if not operations:
            console.print("[green]✓[/green] No changes needed")
            return

        _display_operations(operations)
        if show_sql:
            console.print("\n[bold cyan]SQL[/bold cyan]")
            for operation in operations:
                for statement in reconciler.executor.dialect.render(operation):
                    console.print(f"{statement};", highlight=False)

    _run_with_reconciler(config, OperationMode.DRY_RUN, run_plan)


@schema.command("apply")
@click.option("--force", is_flag=True, help="Ignore the applied-schema marker")
@click.option("--dry-run", is_flag=True, help="Render SQL without executing it")
@click.pass_context
@handle_errors
def schema_apply(ctx, force: bool, dry_run: bool):
    """Converge the database on the module declarations."""
    config = _load_config(ctx)
    contributions = _load_contributions(config)
    mode = OperationMode.DRY_RUN if dry_run else OperationMode.APPLY

    async def run_apply(reconciler: SchemaReconciler):
        return await reconciler.apply(contributions, force=force)

    result = _run_with_reconciler(config, mode, run_apply)
    _report_result(result, dry_run)


@schema.command("uninstall")
@click.argument("module")
@click.option("--dry-run", is_flag=True, help="Render SQL without executing it")
@click.pass_context
@handle_errors
def schema_uninstall(ctx, module: str, dry_run: bool):
    """Remove everything MODULE installed that no other module declares."""
    config = _load_config(ctx)
    contributions = _load_contributions(config)
    mode = OperationMode.DRY_RUN if dry_run else OperationMode.APPLY

    async def run_uninstall(reconciler: SchemaReconciler):
        known = {c.module for c in contributions} | set(reconciler.ledger.modules)
        if module not in known:
            raise ConfigurationError(f"Unknown module '{module}'")
        return await reconciler.apply(contributions, uninstall=[module], force=True)

    console.print(f"Uninstalling module: [yellow]{module}[/yellow]")
    result = _run_with_reconciler(config, mode, run_uninstall)
    _report_result(result, dry_run)
    if not dry_run and any(c.module == module for c in contributions):
        console.print(
            f"[yellow]Module '{module}' is still declared; remove its declaration file "
            "or the next apply will reinstall it[/yellow]"
        )


@schema.command("status")
@click.pass_context
@handle_errors
def schema_status(ctx):
    """Show whitelist entries and the applied-schema marker."""
    config = _load_config(ctx)

    async def run_status(reconciler: SchemaReconciler):
        status = await reconciler.status()
        status["locked"] = await reconciler.lock.is_locked()
        status["server"] = await reconciler.pool.test_connection(reconciler.target_schema)
        return status

    status = _run_with_reconciler(config, OperationMode.DRY_RUN, run_status)

    server = status["server"]
    console.print(f"[blue]Schema status for '{status['target_schema']}'[/blue]")
    console.print(f"  Server:       PostgreSQL {server['version']} ({server['database']})")
    if not server.get("schema_exists", True):
        console.print("  [yellow]Target schema does not exist yet[/yellow]")
    marker = status["marker"]
    if marker:
        console.print(f"  Applied hash: {marker['schema_hash'][:12]}")
        console.print(f"  Applied at:   {marker['applied_at']}")
    else:
        console.print("  [yellow]No successful apply recorded[/yellow]")
    if status["locked"]:
        console.print("  [yellow]A reconciliation is currently running[/yellow]")

    modules_table = Table(title="Installed Modules")
    modules_table.add_column("Module", style="cyan")
    modules_table.add_column("Version", style="magenta")
    modules_table.add_column("Tables", style="green")
    modules_table.add_column("Elements", style="yellow")
    for entry in status["modules"]:
        elements = entry["installed_elements"]
        tables = {e["table"] for e in elements}
        modules_table.add_row(
            entry["module"], entry["version"], str(len(tables)), str(len(elements))
        )
    console.print(modules_table)


def _load_config(ctx) -> DbconvergeConfig:
    root = ctx.find_root().obj
    path = root["config_path"]
    if not Path(path).exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    config = DbconvergeConfig.from_yaml(path)
    config.validate_config()
    configure_logging(config.logging, debug=root["debug"] or config.debug)
    return config


def _load_contributions(config: DbconvergeConfig) -> List[ModuleContribution]:
    return load_declarations(config.declarations.path, config.declarations.pattern)


def _run_with_reconciler(
    config: DbconvergeConfig,
    mode: OperationMode,
    action: Callable[[SchemaReconciler], Awaitable[T]],
) -> T:
    """Open a pool, build a reconciler and run ``action`` on the event loop."""
    database = config.require_database()

    async def run() -> T:
        pool = ConnectionPool(
            ConnectionConfig(
                **database.pool_settings(), search_path=config.reconcile.target_schema
            )
        )
        await pool.initialize()
        try:
            ledger = OwnershipLedger.load(FileWhitelistStore(config.declarations.whitelist_dir))
            reconciler = SchemaReconciler(pool, ledger, config.reconcile, mode=mode)
            return await action(reconciler)
        finally:
            await pool.close()

    return asyncio.run(run())


def _display_operations(operations: List[SchemaOperation]):
    ops_table = Table(title="Planned Operations")
    ops_table.add_column("#", style="dim", justify="right")
    ops_table.add_column("Operation", style="cyan")
    ops_table.add_column("Table", style="magenta")
    ops_table.add_column("Details", style="green")

    for number, operation in enumerate(operations, 1):
        style = "red" if operation.is_destructive else None
        ops_table.add_row(
            str(number),
            operation.op_type.display_name,
            operation.table,
            operation.description,
            style=style,
        )
    console.print(ops_table)


def _display_warnings(warnings: List[OwnershipViolation]):
    for warning in warnings:
        console.print(f"[yellow]⚠ {warning.element_id}: {warning.reason}[/yellow]")


def _report_result(result: ReconciliationResult, dry_run: bool):
    if result.short_circuited:
        console.print("[green]✓[/green] Schema is up to date (applied-schema marker matches)")
        return

    _display_warnings(result.warnings)
    if result.report is None or not result.report.results:
        console.print("[green]✓[/green] No changes needed")
        return

    if dry_run:
        console.print("[blue]DRY RUN: the following SQL would be executed[/blue]")
        for statement in result.report.sql:
            console.print(f"{statement};", highlight=False)
        return

    results_table = Table(title="Applied Operations")
    results_table.add_column("Operation", style="cyan")
    results_table.add_column("Outcome", style="magenta")
    results_table.add_column("Error", style="red")
    for op_result in result.report.results:
        results_table.add_row(
            str(op_result.operation), op_result.outcome.value, op_result.error or ""
        )
    console.print(results_table)

    if result.status == ReconciliationStatus.SUCCESS:
        console.print(
            f"[green]✓[/green] Schema converged ({result.execution_time_ms:.1f}ms)"
        )
        return

    console.print(f"[yellow]Reconciliation {result.status.value}[/yellow]")
    for table, table_result in result.table_results.items():
        if table_result.status != ReconciliationStatus.SUCCESS:
            console.print(f"  {table}: {table_result.status.value}")
    sys.exit(EXIT_PARTIAL)


def _create_default_config() -> DbconvergeConfig:
    """Create a default configuration with placeholders."""
    return DbconvergeConfig(
        database=DatabaseConnection(
            host="${POSTGRES_HOST}",
            port=5432,
            database="${POSTGRES_DB}",
            user="${POSTGRES_USER}",
            password="${POSTGRES_PASSWORD}",
        ),
    )


def _display_config_summary(config: DbconvergeConfig):
    """Display a summary of the configuration."""
    console.print("\n[blue]Configuration Summary[/blue]")

    summary = Table(title="Settings")
    summary.add_column("Setting", style="cyan")
    summary.add_column("Value", style="green")

    if config.database is not None:
        summary.add_row("Database", f"{config.database.host}:{config.database.port}/"
                        f"{config.database.database}")
    else:
        summary.add_row("Database", "[yellow]not configured[/yellow]")
    summary.add_row("Target schema", config.reconcile.target_schema)
    summary.add_row(
        "Marker table", f"{config.reconcile.metadata_schema}.{config.reconcile.marker_table}"
    )
    summary.add_row("Declarations", f"{config.declarations.path}/{config.declarations.pattern}")
    summary.add_row("Whitelist", config.declarations.whitelist_dir)
    summary.add_row("Transactional DDL", str(config.reconcile.transactional_ddl))

    console.print(summary)


if __name__ == "__main__":
    main()
