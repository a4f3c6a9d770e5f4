"""
Command-line interface for vmfleet.
Converges a fleet of VMs described in a YAML file onto a Proxmox node.
"""

import json
import logging
from pathlib import Path
from typing import Callable, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vmfleet.actuator import Actuator
from vmfleet.config import Config
from vmfleet.errors import UsageError, VMFleetError
from vmfleet.fleet_config import load_desired_config
from vmfleet.models import DesiredConfig, PlanResult
from vmfleet.orchestrator import FleetOrchestrator, OperationReport
from vmfleet.planner import format_summary
from vmfleet.proxmox_actuator import ProxmoxActuator
from vmfleet.reconciler import FailurePolicy, LoggingListener, ProgressEvent, ProgressListener, ProgressStatus

app = typer.Typer(
    name="vmfleet",
    help="Declarative VM fleet management for Proxmox VE",
    add_completion=False
)
console = Console()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.WARNING),
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)

CONFIG_ARGUMENT = typer.Argument(Path("vmfleet.yaml"), help="Fleet configuration file")
JSON_OPTION = typer.Option(False, "--json", help="Emit a JSON document instead of text")


def build_actuator() -> Actuator:
    """Actuator used by every command."""
    return ProxmoxActuator()


class ConsoleListener(ProgressListener):
    """Prints one line per action as it runs."""

    def on_event(self, event: ProgressEvent) -> None:
        description = escape(event.action.describe())
        if event.status == ProgressStatus.STARTING:
            console.print(f"  → {description}...")
        elif event.status == ProgressStatus.COMPLETED:
            console.print(f"  [green]✓[/green] {description}")
        else:
            console.print(f"  [red]✗[/red] {description}: {escape(str(event.error))}")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    """Declarative VM fleet management for Proxmox VE."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _emit_json(command: str, success: bool, data: dict) -> None:
    typer.echo(json.dumps({"command": command, "success": success, **data}, indent=2))


def _print_error(command: str, error: VMFleetError, as_json: bool) -> None:
    if as_json:
        _emit_json(command, False, {"error": error.to_dict()})
    else:
        console.print(f"[red]❌ {escape(error.format())}[/red]")


def _run(command: str, as_json: bool, fn: Callable[[], int]) -> None:
    """Run a command body and turn errors into exit codes."""
    try:
        code = fn()
    except VMFleetError as e:
        logger.debug(f"{command} failed", exc_info=True)
        _print_error(command, e, as_json)
        raise typer.Exit(e.exit_code)
    except Exception as e:
        logger.exception(f"Unexpected error in {command}")
        if as_json:
            _emit_json(command, False, {"error": {"code": "INTERNAL", "message": str(e)}})
        else:
            console.print(f"[red]❌ Unexpected error: {escape(str(e))}[/red]")
        raise typer.Exit(2)
    if code:
        raise typer.Exit(code)


def _orchestrator(desired: DesiredConfig, as_json: bool, continue_on_error: bool = False) -> FleetOrchestrator:
    policy = FailurePolicy.CONTINUE if continue_on_error else FailurePolicy.from_value(Config.FAILURE_POLICY)
    return FleetOrchestrator(
        desired,
        build_actuator(),
        listener=LoggingListener() if as_json else ConsoleListener(),
        failure_policy=policy,
    )


def _print_plan(plan: PlanResult) -> None:
    if not plan.actions:
        console.print(f"✅ {format_summary(plan)}")
        return
    table = Table(title="Planned Actions")
    table.add_column("Action", style="cyan")
    table.add_column("Machine", style="green")
    table.add_column("Details")
    for action in plan.actions:
        table.add_row(action.kind.value, action.machine_name, escape(action.describe()))
    console.print(table)
    console.print(f"Plan: {format_summary(plan)}")


def _finish(command: str, report: OperationReport, as_json: bool) -> int:
    """Print an operation report and return the exit code."""
    errors = report.result.errors if report.result else []
    if as_json:
        _emit_json(command, report.ok, report.to_dict())
    else:
        for machine_name in report.pruned:
            console.print(f"🧹 Removed stale state for {machine_name} (VM no longer exists)")
        for rejected in report.rejected:
            console.print(f"[yellow]⚠️  SAFETY: {rejected.action.machine_name} not touched: "
                          f"{escape(rejected.reason)}[/yellow]")
        for machine_name in report.plan.skipped:
            console.print(f"[yellow]⚠️  Skipped {machine_name}[/yellow]")
        if report.result is None:
            console.print(f"✅ {format_summary(report.plan)}")
        else:
            result = report.result
            line = f"{result.succeeded} succeeded, {result.failed} failed, {result.skipped} skipped"
            console.print(("✅ " if report.ok else "❌ ") + line)
    if errors:
        return errors[0].exit_code
    return 0


@app.command()
def validate(config_file: Path = CONFIG_ARGUMENT, as_json: bool = JSON_OPTION) -> None:
    """Validate a fleet configuration file."""

    def _validate() -> int:
        desired = load_desired_config(str(config_file))
        if as_json:
            _emit_json("validate", True, {
                "project": desired.project_name,
                "config_hash": desired.config_hash,
                "artifact_path": desired.artifact_path,
                "auto_start": desired.auto_start,
                "machines": [
                    {"name": m.name, "cpu": m.cpu, "memory_mb": m.memory_mb,
                     "base_image": m.base_image_path, "disk_strategy": m.disk_strategy.value}
                    for m in desired.machines
                ],
            })
            return 0
        console.print(f"✅ Configuration is valid: project [bold]{escape(desired.project_name)}[/bold]")
        table = Table(title="Machines")
        table.add_column("Name", style="cyan")
        table.add_column("CPU")
        table.add_column("Memory")
        table.add_column("Base image", style="green")
        table.add_column("Disk")
        for machine in desired.machines:
            table.add_row(machine.name, str(machine.cpu), f"{machine.memory_mb} MB",
                          escape(machine.base_image_path), machine.disk_strategy.value)
        console.print(table)
        return 0

    _run("validate", as_json, _validate)


@app.command()
def plan(config_file: Path = CONFIG_ARGUMENT, as_json: bool = JSON_OPTION) -> None:
    """Show what 'up' would do without changing anything."""

    def _plan() -> int:
        desired = load_desired_config(str(config_file))
        report = _orchestrator(desired, as_json).plan_up()
        if as_json:
            _emit_json("plan", True, report.to_dict())
        else:
            _print_plan(report.plan)
        return 0

    _run("plan", as_json, _plan)


@app.command()
def up(
    config_file: Path = CONFIG_ARGUMENT,
    as_json: bool = JSON_OPTION,
    continue_on_error: bool = typer.Option(False, "--continue-on-error", help="Keep going after a failed action"),
) -> None:
    """Create and start machines until the fleet matches the config."""

    def _up() -> int:
        desired = load_desired_config(str(config_file))
        if not as_json:
            console.print(f"🚀 Bringing up project [bold]{escape(desired.project_name)}[/bold]")
        report = _orchestrator(desired, as_json, continue_on_error).up()
        return _finish("up", report, as_json)

    _run("up", as_json, _up)


@app.command()
def halt(
    config_file: Path = CONFIG_ARGUMENT,
    machine: Optional[str] = typer.Argument(None, help="Only halt this machine"),
    force: bool = typer.Option(False, "--force", help="Power off instead of a graceful shutdown"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Stop running machines."""

    def _halt() -> int:
        desired = load_desired_config(str(config_file))
        machines = [machine] if machine else None
        report = _orchestrator(desired, as_json).halt(machines, force=force)
        return _finish("halt", report, as_json)

    _run("halt", as_json, _halt)


@app.command()
def destroy(
    config_file: Path = CONFIG_ARGUMENT,
    machine: Optional[str] = typer.Argument(None, help="Only destroy this machine"),
    all_machines: bool = typer.Option(False, "--all", help="Destroy every managed machine"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Destroy managed machines and delete their disks."""

    def _destroy() -> int:
        if machine and all_machines:
            raise UsageError("Cannot use --all with a specific machine name.")
        if not machine and not all_machines:
            raise UsageError("Specify a machine name or use --all to destroy all VMs.")
        desired = load_desired_config(str(config_file))
        machines: Optional[List[str]] = [machine] if machine else None
        report = _orchestrator(desired, as_json).destroy(machines)
        return _finish("destroy", report, as_json)

    _run("destroy", as_json, _destroy)


@app.command()
def checkpoint(
    config_file: Path = CONFIG_ARGUMENT,
    name: str = typer.Option(..., "--name", "-n", help="Checkpoint name"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Take a named checkpoint of every managed machine."""

    def _checkpoint() -> int:
        desired = load_desired_config(str(config_file))
        report = _orchestrator(desired, as_json).checkpoint(name)
        return _finish("checkpoint", report, as_json)

    _run("checkpoint", as_json, _checkpoint)


@app.command()
def restore(
    config_file: Path = CONFIG_ARGUMENT,
    name: str = typer.Option(..., "--name", "-n", help="Checkpoint name"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Roll every managed machine back to a named checkpoint."""

    def _restore() -> int:
        desired = load_desired_config(str(config_file))
        report = _orchestrator(desired, as_json).restore(name)
        return _finish("restore", report, as_json)

    _run("restore", as_json, _restore)


@app.command()
def status(config_file: Path = CONFIG_ARGUMENT, as_json: bool = JSON_OPTION) -> None:
    """Show managed machines and their live state."""

    def _status() -> int:
        desired = load_desired_config(str(config_file))
        report = _orchestrator(desired, as_json).status()
        if as_json:
            _emit_json("status", True, report.to_dict())
            return 0

        if not report.platform_available:
            console.print("[yellow]⚠️  Could not query the platform. Showing state only.[/yellow]")
        if not report.state_exists:
            console.print(f"No VMs have been created yet for project '{escape(desired.project_name)}'.")
        table = Table(title=f"Project: {desired.project_name}")
        table.add_column("Machine", style="cyan")
        table.add_column("VM")
        table.add_column("State", style="green")
        table.add_column("CPU")
        table.add_column("Memory")
        table.add_column("Checkpoints")
        for machine in report.machines:
            table.add_row(
                machine.machine_name,
                machine.derived_name,
                machine.runtime_state,
                str(machine.cpu) if machine.cpu else "-",
                f"{machine.memory_mb} MB" if machine.memory_mb else "-",
                ", ".join(machine.checkpoints) or "-",
            )
        console.print(table)
        return 0

    _run("status", as_json, _status)


if __name__ == "__main__":
    app()
