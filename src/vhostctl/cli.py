"""Typer-powered command line interface for ``vhostctl``.

Every command resolves its collaborators through :class:`RuntimeContext`,
runs inside a structured ``logger.operation`` scope and maps the error
taxonomy onto :class:`~vhostctl.exit_codes.ExitCode` so automation can tell a
precondition problem from an unreachable node.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import PartialMigrationFailure, PreconditionError, TransportError, VhostctlError
from .exit_codes import ExitCode
from .inventory import NodeInventory
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_logging
from .migration import (
    MigrationEngine,
    MigrationOutcome,
    MigrationStatus,
    MigrationStore,
    PermissionFixer,
    RollbackEngine,
    Validator,
)
from .ports import PortPlan
from .remote import ProcessRunner, RemoteTarget, ScriptExecutor, SshTransport, Transport
from .scripts import SCRIPTS, ScriptError, ScriptLibrary
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine, TemplateError
from .tunnels import Spawner, TunnelDescriptor, TunnelManager, TunnelRegistry

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to an alternate config.yml (defaults to /etc/vhostctl/config.yml).",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Remote execution and layout migration for multi-node vhost fleets.

        Runs versioned shell scripts on nodes over SSH, manages local port
        forwards to node services and migrates vhosts to the web/app/public
        layout with backup and rollback.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
tunnel_app = typer.Typer(help="Manage SSH port forwards to node services.")
script_app = typer.Typer(help="Inspect the remote script catalogue.")

app.add_typer(config_app, name="config")
app.add_typer(tunnel_app, name="tunnel")
app.add_typer(script_app, name="script")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    scripts: ScriptLibrary
    inventory: NodeInventory
    store: MigrationStore
    executor: ScriptExecutor
    tunnels: TunnelManager


def build_runtime(
    config: AppConfig,
    *,
    runner: ProcessRunner | None = None,
    transport: Transport | None = None,
    spawner: Spawner | None = None,
) -> RuntimeContext:
    """Wire every collaborator from *config*."""
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    locks = LockManager(config.runtime_dir, default_timeout=config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    scripts = ScriptLibrary(templates, config.migration)
    process_runner = runner or ProcessRunner()
    ssh = config.ssh
    resolved_transport = transport or SshTransport(
        binary=ssh.binary,
        connect_timeout=ssh.connect_timeout,
        strict_host_key_checking=ssh.strict_host_key_checking,
    )
    executor = ScriptExecutor(
        process_runner,
        resolved_transport,
        default_timeout=ssh.execution_timeout,
        retries=ssh.retries,
        retry_backoff=ssh.retry_backoff,
    )
    tunnels = TunnelManager(
        spawner or process_runner,
        resolved_transport,
        TunnelRegistry(registry),
        PortPlan.from_config(config.tunnels),
        control_dir=config.control_dir,
        bind_address=config.tunnels.bind_address,
        ready_timeout=config.tunnels.ready_timeout,
        grace_period=config.tunnels.grace_period,
    )
    return RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        scripts=scripts,
        inventory=NodeInventory(registry),
        store=MigrationStore(registry, locks),
        executor=executor,
        tunnels=tunnels,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        runtime = build_runtime(config)
    except (ConfigError, StateRegistryError, TemplateError) as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.PRECONDITION) from exc
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Stream debug logging to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"vhostctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    configure_logging(runtime.config.logs_dir, verbose=verbose)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _exit_code_for(exc: BaseException) -> int:
    """Return the exit code an exception should surface as."""
    if isinstance(exc, PartialMigrationFailure) and isinstance(exc.__cause__, TransportError):
        return int(ExitCode.TRANSPORT)
    if isinstance(exc, VhostctlError):
        return int(exc.exit_code)
    if isinstance(exc, (LockTimeoutError, ScriptError, StateRegistryError, TemplateError)):
        return int(ExitCode.PRECONDITION)
    return int(ExitCode.FAILURE)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.PRECONDITION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    _command_error(op, str(exc) or type(exc).__name__, rc=_exit_code_for(exc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _resolve_target(runtime: RuntimeContext, op: OperationScope, node: str) -> RemoteTarget:
    try:
        return runtime.inventory.resolve(node)
    except PreconditionError as exc:
        _fail(op, exc)


def _migration_engine(runtime: RuntimeContext) -> MigrationEngine:
    return MigrationEngine(
        runtime.executor,
        runtime.scripts,
        runtime.store,
        runtime.locks,
        runtime.inventory.resolve,
        config=runtime.config.migration,
        timeout=runtime.config.ssh.migration_timeout,
    )


def _rollback_engine(runtime: RuntimeContext) -> RollbackEngine:
    return RollbackEngine(
        runtime.executor,
        runtime.scripts,
        runtime.store,
        runtime.locks,
        runtime.inventory.resolve,
        config=runtime.config.migration,
        timeout=runtime.config.ssh.migration_timeout,
    )


def _validator(runtime: RuntimeContext) -> Validator:
    return Validator(
        runtime.executor,
        runtime.scripts,
        runtime.store,
        runtime.locks,
        runtime.inventory.resolve,
        config=runtime.config.migration,
    )


def _permission_fixer(runtime: RuntimeContext) -> PermissionFixer:
    return PermissionFixer(
        runtime.executor,
        runtime.scripts,
        runtime.store,
        runtime.locks,
        runtime.inventory.resolve,
        config=runtime.config.migration,
    )


def _render_migration_log(log: Mapping[str, object]) -> None:
    """Print a migration log verbatim: steps, warnings, errors."""
    steps = log.get("steps_completed") or []
    console.print(f"  status: {log.get('status')}")
    console.print(f"  steps completed: {', '.join(str(step) for step in steps) or '(none)'}")
    if log.get("failed_step"):
        console.print(f"  failed step: [red]{log['failed_step']}[/red]")
    if log.get("backup_archive"):
        console.print(f"  backup archive: {log['backup_archive']}")
    elif log.get("skipped_backup"):
        console.print("  backup archive: [yellow](skipped)[/yellow]")
    for change in log.get("structural_changes") or []:
        console.print(f"  change: {change}")
    for warning in log.get("warnings") or []:
        console.print(f"  [yellow]warning:[/yellow] {warning}")
    for error in log.get("errors") or []:
        console.print(f"  [red]error:[/red] {error}")


def _tunnel_row(entry: TunnelDescriptor) -> dict[str, object]:
    data = entry.to_dict()
    data["endpoint"] = entry.endpoint
    return data


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# ----------------------------------------------------------------------
# exec
# ----------------------------------------------------------------------
@app.command("exec")
def exec_script(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Registered node to run on."),
    script: str = typer.Argument(
        ..., help="Catalogue script name, or a path to a local shell script."
    ),
    args: list[str] | None = typer.Argument(None, help="Positional arguments ($1..$n)."),
    privileged: bool | None = typer.Option(
        None,
        "--privileged/--unprivileged",
        help="Elevate with sudo (catalogue scripts default to their own setting).",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Print the remote command without running it."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Execution timeout in seconds."
    ),
) -> None:
    """Run a script on NODE and print its output."""
    runtime = _get_runtime(ctx)
    positional = list(args or [])

    with runtime.logger.operation(
        "exec",
        args={"script": script, "args": positional, "dry_run": dry_run},
        target={"kind": "node", "name": node},
    ) as op:
        target = _resolve_target(runtime, op, node)
        try:
            if script in SCRIPTS:
                rendered = runtime.scripts.render(script, positional)
                body = rendered.body
                elevate = rendered.asset.privileged if privileged is None else privileged
            else:
                path = Path(script)
                if not path.is_file():
                    raise PreconditionError(
                        f"'{script}' is neither a catalogue script nor a readable file."
                    )
                body = path.read_text(encoding="utf-8")
                elevate = bool(privileged)
            result = runtime.executor.execute_script(
                target,
                body,
                positional,
                as_privileged=elevate,
                dry_run=dry_run,
                timeout=timeout,
            )
        except (VhostctlError, ScriptError, OSError) as exc:
            _fail(op, exc)

        if result.stdout:
            console.print(result.stdout, end="", markup=False, highlight=False)
        if dry_run:
            _dry_run_complete(op, f"would run {script} on {node}.", context={"node": node})
            return
        if result.stderr:
            console.print(result.stderr, end="", markup=False, highlight=False, style="red")
        if not result.success:
            _command_error(
                op,
                f"{script} exited with code {result.exit_code} on {node}.",
                rc=ExitCode.FAILURE,
            )
        op.success(f"Ran {script} on {node}.", changed=1 if elevate else 0)


# ----------------------------------------------------------------------
# tunnel
# ----------------------------------------------------------------------
@tunnel_app.command("create")
def tunnel_create(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Registered node to forward to."),
    service: str = typer.Argument(..., help="Service name (mysql, redis, api, ...)."),
    local_port: int | None = typer.Option(
        None, "--local-port", help="Override the deterministic local port."
    ),
    remote_host: str = typer.Option(
        "127.0.0.1", "--remote-host", help="Host to reach from the node."
    ),
    remote_port: int | None = typer.Option(
        None, "--remote-port", help="Override the service's default port."
    ),
) -> None:
    """Start a forward for SERVICE on NODE (reuses a live one)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tunnel create",
        args={"service": service, "local_port": local_port, "remote_port": remote_port},
        target={"kind": "node", "name": node},
    ) as op:
        target = _resolve_target(runtime, op, node)
        try:
            entry = runtime.tunnels.create(
                target,
                service,
                local_port=local_port,
                remote_host=remote_host,
                remote_port=remote_port,
                detach=True,
            )
        except VhostctlError as exc:
            _fail(op, exc)
        console.print(f"[green]{entry.endpoint}[/green] (pid {entry.pid})")
        op.success("Tunnel active.", changed=1, context=_tunnel_row(entry))


@tunnel_app.command("check")
def tunnel_check(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Registered node."),
    service: str | None = typer.Option(None, "--service", help="Check this service's port."),
    local_port: int | None = typer.Option(None, "--local-port", help="Check this port."),
) -> None:
    """Exit 0 when a matching tunnel is live, 1 otherwise."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tunnel check",
        args={"service": service, "local_port": local_port},
        target={"kind": "node", "name": node},
    ) as op:
        target = _resolve_target(runtime, op, node)
        try:
            active = runtime.tunnels.check(target, local_port, service=service)
        except VhostctlError as exc:
            _fail(op, exc)
        if not active:
            console.print("[yellow]inactive[/yellow]")
            op.warning("No live tunnel.")
            raise typer.Exit(code=ExitCode.FAILURE)
        console.print("[green]active[/green]")
        op.success("Tunnel is live.", changed=0)


@tunnel_app.command("ensure")
def tunnel_ensure(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Registered node to forward to."),
    service: str = typer.Argument(..., help="Service name."),
    remote_port: int | None = typer.Option(
        None, "--remote-port", help="Override the service's default port."
    ),
) -> None:
    """Make sure a live tunnel for SERVICE exists and print its endpoint."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tunnel ensure",
        args={"service": service, "remote_port": remote_port},
        target={"kind": "node", "name": node},
    ) as op:
        target = _resolve_target(runtime, op, node)
        try:
            entry = runtime.tunnels.ensure(target, service, remote_port, detach=True)
        except VhostctlError as exc:
            _fail(op, exc)
        console.print(entry.endpoint)
        op.success("Tunnel ensured.", context=_tunnel_row(entry))


@tunnel_app.command("close")
def tunnel_close(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Registered node."),
    local_port: int | None = typer.Option(
        None, "--local-port", help="Close only this port (default: every tunnel of NODE)."
    ),
) -> None:
    """Close tunnels of NODE. Closing nothing is not an error."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tunnel close",
        args={"local_port": local_port},
        target={"kind": "node", "name": node},
    ) as op:
        target = _resolve_target(runtime, op, node)
        closed = runtime.tunnels.close(target, local_port)
        if not closed:
            console.print("No tunnels to close.")
        for entry in closed:
            console.print(f"Closed {entry.node}:{entry.local_port} ({entry.service})")
        op.success(f"Closed {len(closed)} tunnel(s).", changed=len(closed))


@tunnel_app.command("endpoint")
def tunnel_endpoint(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Registered node."),
    service: str = typer.Argument(..., help="Service name."),
) -> None:
    """Print the local URL of an already active tunnel."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tunnel endpoint",
        args={"service": service},
        target={"kind": "node", "name": node},
    ) as op:
        target = _resolve_target(runtime, op, node)
        try:
            url = runtime.tunnels.endpoint(target, service)
        except VhostctlError as exc:
            _fail(op, exc)
        console.print(url, markup=False, highlight=False)
        op.success("Reported tunnel endpoint.", changed=0)


@tunnel_app.command("list")
def tunnel_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List live tunnels, pruning dead ones."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tunnel list",
        args={"json": json_output},
        target={"kind": "tunnels"},
    ) as op:
        entries = runtime.tunnels.list_active()
        if json_output:
            console.print_json(data={"tunnels": [_tunnel_row(entry) for entry in entries]})
            op.success("Reported tunnels as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Node", style="bold")
        table.add_column("Service")
        table.add_column("Local port")
        table.add_column("Remote")
        table.add_column("PID")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                entry.node,
                entry.service,
                str(entry.local_port),
                f"{entry.remote_host}:{entry.remote_port}",
                str(entry.pid or ""),
            )
        console.print(table)
        op.success("Reported tunnels.", changed=0)


# ----------------------------------------------------------------------
# script
# ----------------------------------------------------------------------
@script_app.command("list")
def script_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List catalogue scripts with their arguments and contracts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "script list",
        args={"json": json_output},
        target={"kind": "scripts"},
    ) as op:
        assets = [SCRIPTS[name] for name in sorted(SCRIPTS)]
        if json_output:
            console.print_json(
                data={
                    "scripts": [
                        {
                            "name": asset.name,
                            "version": asset.version,
                            "args": list(asset.args),
                            "privileged": asset.privileged,
                            "idempotency": asset.idempotency,
                        }
                        for asset in assets
                    ]
                }
            )
            op.success("Reported scripts as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Script", style="bold")
        table.add_column("Version")
        table.add_column("Arguments")
        table.add_column("Privileged")
        table.add_column("Idempotency")
        for asset in assets:
            table.add_row(
                asset.name,
                str(asset.version),
                " ".join(asset.args),
                "yes" if asset.privileged else "no",
                asset.idempotency,
            )
        console.print(table)
        op.success("Reported scripts.", changed=0)


@script_app.command("export")
def script_export(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Catalogue script to render."),
    destination: Path = typer.Argument(
        ..., help="File to write, or a directory to receive NAME.sh."
    ),
) -> None:
    """Render a catalogue script to a local file for review."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "script export",
        args={"name": name, "destination": str(destination)},
        target={"kind": "script", "name": name},
    ) as op:
        path = destination / f"{name}.sh" if destination.is_dir() else destination
        try:
            changed = runtime.scripts.export(name, path)
        except (ScriptError, TemplateError, OSError) as exc:
            _fail(op, exc)
        if changed:
            console.print(f"[green]Wrote[/green] {path}")
            op.success(f"Exported {name} to {path}.", changed=1)
        else:
            console.print(f"{path} is already up to date.")
            op.success(f"{path} already matches {name}.", changed=0)


# ----------------------------------------------------------------------
# validate / migrate / rollback / chperms
# ----------------------------------------------------------------------
@app.command()
def validate(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="VHost to check."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run read-only readiness checks; a pass marks the vhost validated."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"json": json_output},
        target={"kind": "vhost", "name": vhost},
    ) as op:
        try:
            report = _validator(runtime).validate(vhost)
        except (VhostctlError, ScriptError) as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(
                data={"vhost": vhost, "status": report.status.value, **report.to_dict()}
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Level", style="bold")
            table.add_column("Category")
            table.add_column("Message")
            colours = {"PASS": "green", "WARN": "yellow", "FAIL": "red", "CRIT": "bold red"}
            for check in report.checks:
                colour = colours.get(check.level, "white")
                table.add_row(f"[{colour}]{check.level}[/{colour}]", check.category, check.message)
            console.print(table)
            console.print(f"Outcome: {report.outcome} (status: {report.status.value})")

        if report.passed:
            op.success(f"Validation {report.outcome}.", changed=1)
            return
        op.warning(f"Validation {report.outcome}.", changed=1)
        raise typer.Exit(code=ExitCode.FAILURE)


@app.command()
def migrate(
    ctx: typer.Context,
    vhost: str | None = typer.Argument(None, help="VHost to migrate."),
    all_validated: bool = typer.Option(
        False, "--all-validated", help="Migrate every validated vhost."
    ),
    node: str | None = typer.Option(
        None, "--node", help="With --all-validated, only vhosts on this node."
    ),
    workers: int | None = typer.Option(
        None, "--workers", min=1, help="Concurrent migrations for --all-validated."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show the plan without contacting any node."
    ),
    no_backup: bool = typer.Option(
        False, "--no-backup", help="Skip the pre-migration archive (disables rollback)."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Migrate a vhost (or every validated one) to the web/app/public layout."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "migrate",
        args={
            "all_validated": all_validated,
            "node": node,
            "dry_run": dry_run,
            "no_backup": no_backup,
        },
        target={"kind": "vhost", "name": vhost or "*"},
    ) as op:
        if (vhost is None) == (not all_validated):
            _command_error(op, "Pass either a VHOST or --all-validated.")
        engine = _migration_engine(runtime)

        if dry_run:
            names = (
                [vhost]
                if vhost is not None
                else [
                    record.vhost
                    for record in runtime.store.records(
                        status=MigrationStatus.VALIDATED, node=node
                    )
                ]
            )
            try:
                plans = [engine.plan(name, skip_backup=no_backup) for name in names]
            except (VhostctlError, ScriptError) as exc:
                _fail(op, exc)
            _render_plans(plans, json_output=json_output)
            _dry_run_complete(op, f"{len(plans)} migration plan(s).", context={"vhosts": names})
            return

        if vhost is None:
            _migrate_batch(
                op,
                engine,
                node=node,
                workers=workers,
                no_backup=no_backup,
                json_output=json_output,
            )
            return

        try:
            outcome = engine.migrate(vhost, skip_backup=no_backup)
        except PartialMigrationFailure as exc:
            if json_output:
                console.print_json(data={"vhost": vhost, "status": "failed", "log": exc.log})
            else:
                console.print(f"[red]Migration of {vhost} failed.[/red]")
                _render_migration_log(exc.log)
            op.error(
                str(exc),
                errors=[str(item) for item in exc.log.get("errors", [])],
                rc=_exit_code_for(exc),
                changed=len(exc.steps_completed),
            )
            raise typer.Exit(code=_exit_code_for(exc)) from exc
        except (VhostctlError, ScriptError) as exc:
            _fail(op, exc)

        log = outcome.log.to_dict()
        if json_output:
            console.print_json(data={"vhost": vhost, "status": outcome.status.value, "log": log})
        else:
            console.print(f"[green]Migrated {vhost}.[/green]")
            _render_migration_log(log)
        backups = [outcome.log.backup_archive] if outcome.log.backup_archive else []
        if outcome.log.warnings:
            op.warning(
                f"Migrated {vhost} with warnings.",
                warnings=outcome.log.warnings,
                changed=len(outcome.log.steps_completed),
                backups=backups,
            )
        else:
            op.success(
                f"Migrated {vhost}.", changed=len(outcome.log.steps_completed), backups=backups
            )


def _render_plans(plans: Sequence[MigrationOutcome], *, json_output: bool) -> None:
    if json_output:
        console.print_json(
            data={
                "plans": [
                    {**(plan.plan or {}), "log": plan.log.to_dict()} for plan in plans
                ]
            }
        )
        return
    for outcome in plans:
        plan = outcome.plan or {}
        console.print(f"[bold]{outcome.vhost}[/bold] on {plan.get('node')} ({plan.get('status')})")
        for step in plan.get("steps", []):  # type: ignore[union-attr]
            console.print(f"  {step['step']}: {step['script']} args={step['args']}")
        console.print("  expected tree:")
        for entry in plan.get("expected_tree", []):  # type: ignore[union-attr]
            console.print(f"    {entry}")
        for warning in outcome.log.warnings:
            console.print(f"  [yellow]warning:[/yellow] {warning}")


def _migrate_batch(
    op: OperationScope,
    engine: MigrationEngine,
    *,
    node: str | None,
    workers: int | None,
    no_backup: bool,
    json_output: bool,
) -> None:
    try:
        rows = engine.migrate_all_validated(skip_backup=no_backup, node=node, max_workers=workers)
    except VhostctlError as exc:
        _fail(op, exc)

    if json_output:
        console.print_json(
            data={
                "results": [
                    {
                        "vhost": row.vhost,
                        "node": row.node,
                        "status": row.status,
                        "steps": row.steps,
                        "error": row.error,
                    }
                    for row in rows
                ]
            }
        )
    else:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("VHost", style="bold")
        table.add_column("Node")
        table.add_column("Status")
        table.add_column("Steps")
        table.add_column("Error")
        if not rows:
            table.add_row("(none)", "", "", "", "")
        for row in rows:
            colour = "green" if row.status == MigrationStatus.MIGRATED.value else "red"
            table.add_row(
                row.vhost,
                row.node,
                f"[{colour}]{row.status}[/{colour}]",
                str(row.steps),
                row.error or "",
            )
        console.print(table)

    failures = [row for row in rows if row.status != MigrationStatus.MIGRATED.value]
    if failures:
        _command_error(
            op,
            f"{len(failures)} of {len(rows)} migration(s) did not complete.",
            rc=ExitCode.FAILURE,
            errors=[f"{row.vhost}: {row.error}" for row in failures],
        )
    op.success(f"Migrated {len(rows)} vhost(s).", changed=len(rows))


@app.command()
def rollback(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="VHost to restore."),
    archive: str | None = typer.Option(
        None, "--archive", help="Archive to restore (default: the newest)."
    ),
    list_points: bool = typer.Option(
        False, "--list", help="List available rollback points instead of restoring."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore VHOST from a pre-migration archive."""
    runtime = _get_runtime(ctx)
    engine = _rollback_engine(runtime)

    if list_points:
        with runtime.logger.operation(
            "rollback list",
            args={"json": json_output},
            target={"kind": "vhost", "name": vhost},
        ) as op:
            try:
                points = engine.list_rollback_points(vhost)
            except (VhostctlError, ScriptError) as exc:
                _fail(op, exc)
            if json_output:
                console.print_json(
                    data={"vhost": vhost, "archives": [point.to_dict() for point in points]}
                )
            else:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Archive", style="bold")
                table.add_column("Created")
                table.add_column("Size")
                if not points:
                    table.add_row("(none)", "", "")
                for point in points:
                    table.add_row(point.filename, point.created_at, str(point.size))
                console.print(table)
            op.success("Listed rollback points.", changed=0)
        return

    with runtime.logger.operation(
        "rollback",
        args={"archive": archive},
        target={"kind": "vhost", "name": vhost},
    ) as op:
        try:
            outcome = engine.rollback(vhost, archive)
        except (VhostctlError, ScriptError) as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(
                data={
                    "vhost": vhost,
                    "archive": outcome.archive,
                    "status": outcome.status.value,
                    "restored": list(outcome.restored),
                    "removed": list(outcome.removed),
                    "warnings": list(outcome.warnings),
                }
            )
        else:
            console.print(f"[green]Restored {vhost} from {outcome.archive}.[/green]")
            for warning in outcome.warnings:
                console.print(f"  [yellow]warning:[/yellow] {warning}")
        if outcome.warnings:
            op.warning(
                f"Rolled back {vhost} with warnings.",
                warnings=outcome.warnings,
                changed=len(outcome.restored) + len(outcome.removed),
            )
        else:
            op.success(
                f"Rolled back {vhost}.", changed=len(outcome.restored) + len(outcome.removed)
            )


@app.command()
def chperms(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node the vhosts live on."),
    vhost: str | None = typer.Argument(None, help="Single vhost to fix."),
    all_vhosts: bool = typer.Option(False, "--all", help="Fix every vhost on NODE."),
    web_only: bool = typer.Option(False, "--web-only", help="Only touch the web root."),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Print the remote command without running it."
    ),
) -> None:
    """Reapply ownership and modes for vhosts on NODE."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "chperms",
        args={"all": all_vhosts, "web_only": web_only, "dry_run": dry_run},
        target={"kind": "node", "name": node, "vhost": vhost},
    ) as op:
        if (vhost is None) == (not all_vhosts):
            _command_error(op, "Pass either a VHOST or --all.")
        fixer = _permission_fixer(runtime)
        try:
            if vhost is not None:
                record = runtime.store.get(vhost)
                if record.node != node:
                    raise PreconditionError(f"VHost {vhost} lives on {record.node}, not {node}.")
                results = [fixer.fix_permissions(vhost, web_only=web_only, dry_run=dry_run)]
            else:
                results = fixer.fix_node(node, web_only=web_only, dry_run=dry_run)
        except (VhostctlError, ScriptError) as exc:
            _fail(op, exc)

        for result in results:
            if dry_run:
                console.print(result.command or "", markup=False, highlight=False)
            elif result.ok:
                console.print(f"[green]{result.vhost}[/green]: {len(result.fixed)} path(s) fixed")
                for warning in result.warnings:
                    console.print(f"  [yellow]warning:[/yellow] {warning}")
            else:
                console.print(f"[red]{result.vhost}[/red]: {result.error}")

        if dry_run:
            _dry_run_complete(op, f"would fix {len(results)} vhost(s).")
            return
        failed = [result for result in results if not result.ok]
        if failed:
            _command_error(
                op,
                f"{len(failed)} of {len(results)} permission fix(es) failed.",
                rc=ExitCode.FAILURE,
                errors=[f"{result.vhost}: {result.error}" for result in failed],
            )
        op.success(f"Fixed permissions for {len(results)} vhost(s).", changed=len(results))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
