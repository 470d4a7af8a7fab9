"""Command-line interface for deploying and operating a Velociraptor server."""

from __future__ import annotations

import json
import os
import signal
import threading
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from velociraptor_deployer.config_validation import validate_service_name
from velociraptor_deployer.deploy import DeploymentOrchestrator, EnvironmentProfile, load_profile
from velociraptor_deployer.errors import DeploymentError, ProvisioningWarning
from velociraptor_deployer.health import HealthChecker, OverallHealth
from velociraptor_deployer.logging_utils import configure_logging, get_logger
from velociraptor_deployer.models import DeploymentRecord
from velociraptor_deployer.principal import generate_secret
from velociraptor_deployer.services import ServiceManager, select_service_manager

ADMIN_SECRET_ENV = "VELDEPLOY_ADMIN_SECRET"

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()
LOGGER = get_logger("cli")


def _create_service_manager() -> ServiceManager:
    """Select the service backend for this host."""
    return select_service_manager()


def _create_orchestrator(cancel_event: threading.Event | None = None) -> DeploymentOrchestrator:
    """Create an orchestrator wired to this host's service manager."""
    return DeploymentOrchestrator(
        service_manager=_create_service_manager(),
        cancel_event=cancel_event,
    )


def _load_profile(env: str, profile_file: Path | None) -> EnvironmentProfile:
    try:
        return load_profile(env.strip().lower(), profile_file)
    except ValueError as exc:
        raise _fail(str(exc)) from exc


def _service_name(name: str) -> str:
    try:
        return validate_service_name(name)
    except ValueError as exc:
        raise _fail(str(exc)) from exc


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(code=1)


def _install_shutdown_handler(cancel_event: threading.Event) -> None:
    """Turn SIGTERM into a cancellation request for the running deployment."""
    if threading.current_thread() is not threading.main_thread():
        return
    signal.signal(signal.SIGTERM, lambda _signum, _frame: cancel_event.set())


def _print_record(record: DeploymentRecord) -> None:
    table = Table(title="Deployment Result")
    table.add_column("Environment")
    table.add_column("Status")
    table.add_column("Version")
    table.add_column("URL")
    table.add_column("Warnings")
    table.add_row(
        record.environment,
        record.status.value,
        record.asset.version if record.asset else "-",
        record.url or "-",
        str(len(record.warnings)),
    )
    console.print(table)
    for warning in record.warnings:
        console.print(f"[yellow]warning[/yellow] ({warning.step}) {warning.message}")
    for error in record.errors:
        console.print(f"[red]error[/red] ({error['stage']}) {error['type']}: {error['message']}")


@app.callback()
def main(
    log_file: Annotated[
        Path,
        typer.Option(help="Structured log stream destination (default: ./veldeploy.log)."),
    ] = Path("veldeploy.log"),
    verbose: Annotated[bool, typer.Option(help="Log at DEBUG level.")] = False,
    json_logs: Annotated[
        bool,
        typer.Option("--json-logs/--text-logs", help="Log file format."),
    ] = True,
) -> None:
    """Deploy, configure and supervise a Velociraptor server."""
    configure_logging(log_file=log_file, verbose=verbose, json_format=json_logs)


@app.command()
def deploy(
    env: Annotated[str, typer.Option("--env", help="Environment profile name.")] = "development",
    profile_file: Annotated[
        Path | None,
        typer.Option(help="YAML file with profile overrides (default: $VELDEPLOY_PROFILES)."),
    ] = None,
    admin_secret_env: Annotated[
        str,
        typer.Option(help="Environment variable holding the admin password."),
    ] = ADMIN_SECRET_ENV,
) -> None:
    """Run the full deployment pipeline for one environment."""
    profile = _load_profile(env, profile_file)
    supplied_secret = os.environ.get(admin_secret_env)
    admin_secret = supplied_secret or generate_secret()
    cancel_event = threading.Event()
    _install_shutdown_handler(cancel_event)
    orchestrator = _create_orchestrator(cancel_event)
    try:
        record = orchestrator.deploy(profile, admin_secret=admin_secret)
    except DeploymentError as exc:
        if exc.record is not None:
            _print_record(exc.record)
        raise _fail(str(exc)) from exc

    _print_record(record)
    reused = any(isinstance(item, ProvisioningWarning) for item in record.warnings)
    if reused:
        console.print(
            f"Admin account '{profile.admin_username}' already existed; its password was kept."
        )
    elif supplied_secret:
        console.print(
            f"Admin account '{profile.admin_username}' uses the password from ${admin_secret_env}."
        )
    else:
        console.print(f"Admin account '{profile.admin_username}' password: {admin_secret}")
    console.print("[bold]Change any generated credentials after first login.[/bold]")


@app.command()
def install(
    name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor",
    binary: Annotated[Path, typer.Option(help="Path to the server binary.")] = Path("velociraptor"),
    config: Annotated[
        Path,
        typer.Option(help="Path to the server config."),
    ] = Path("server.config.yaml"),
    working_dir: Annotated[
        Path | None,
        typer.Option(help="Working directory for the service."),
    ] = None,
    user: Annotated[str | None, typer.Option(help="Account the service runs as.")] = None,
    auto_start: Annotated[
        bool,
        typer.Option("--auto-start/--no-auto-start", help="Start at boot and start now."),
    ] = True,
) -> None:
    """Register the server as an OS service."""
    manager = _create_service_manager()
    descriptor = manager.descriptor(
        _service_name(name),
        run_as_user=user,
        working_directory=working_dir.resolve() if working_dir else None,
        writable_paths=(working_dir.resolve(),) if working_dir else (),
    )
    try:
        manager.install(descriptor, binary.resolve(), config.resolve(), auto_start=auto_start)
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"Service '{descriptor.name}' installed.")


@app.command()
def uninstall(name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor") -> None:
    """Stop and unregister the service."""
    manager = _create_service_manager()
    service = _service_name(name)
    try:
        if manager.status(service).running:
            manager.stop(service)
        manager.uninstall(service)
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"Service '{service}' removed.")


@app.command()
def start(name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor") -> None:
    """Start the service."""
    manager = _create_service_manager()
    try:
        manager.start(_service_name(name))
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"Service '{name}' started.")


@app.command()
def stop(name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor") -> None:
    """Stop the service."""
    manager = _create_service_manager()
    try:
        manager.stop(_service_name(name))
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"Service '{name}' stopped.")


@app.command()
def restart(name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor") -> None:
    """Stop then start the service."""
    manager = _create_service_manager()
    try:
        manager.restart(_service_name(name))
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"Service '{name}' restarted.")


@app.command()
def status(name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor") -> None:
    """Print normalized service status as JSON."""
    manager = _create_service_manager()
    result = manager.status(_service_name(name))
    console.print_json(json.dumps(result.to_dict()))


@app.command()
def logs(
    name: Annotated[str, typer.Option(help="Service name.")] = "velociraptor",
    lines: Annotated[int, typer.Option(help="Number of recent lines.")] = 50,
) -> None:
    """Print recent service log lines."""
    if lines <= 0:
        raise _fail("lines must be greater than zero.")
    manager = _create_service_manager()
    try:
        output = manager.logs(_service_name(name), lines=lines)
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(output, markup=False, highlight=False)


@app.command()
def rollback(
    env: Annotated[str, typer.Option("--env", help="Environment profile name.")] = "development",
    profile_file: Annotated[Path | None, typer.Option(help="YAML profile overrides.")] = None,
) -> None:
    """Restore the most recent config backup and restart the service."""
    profile = _load_profile(env, profile_file)
    orchestrator = _create_orchestrator()
    try:
        record = orchestrator.rollback(profile)
    except DeploymentError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"{record.environment}: {record.status.value} ({record.config_path})")


@app.command()
def health(
    env: Annotated[str, typer.Option("--env", help="Environment profile name.")] = "development",
    profile_file: Annotated[Path | None, typer.Option(help="YAML profile overrides.")] = None,
) -> None:
    """Check binary, data directory, config, process, network and disk."""
    profile = _load_profile(env, profile_file)
    report = HealthChecker(service_manager=_create_service_manager()).check(profile)
    table = Table(title=f"Health: {profile.name}")
    table.add_column("Check")
    table.add_column("State")
    table.add_column("Detail")
    for check in report.checks:
        table.add_row(check.name, check.state.value, check.detail)
    console.print(table)
    console.print(f"Overall: {report.overall.value}")
    if report.overall is OverallHealth.UNHEALTHY:
        raise typer.Exit(code=1)


@app.command()
def cleanup(
    env: Annotated[str, typer.Option("--env", help="Environment profile name.")] = "development",
    profile_file: Annotated[Path | None, typer.Option(help="YAML profile overrides.")] = None,
    remove_data: Annotated[
        bool,
        typer.Option("--remove-data", help="Also delete config, backups and the data directory."),
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", help="Do not ask for confirmation.")] = False,
) -> None:
    """Stop and remove the server installation."""
    profile = _load_profile(env, profile_file)
    if not yes:
        typer.confirm(
            f"Remove the '{profile.name}' installation at {profile.install_dir}?", abort=True
        )
    orchestrator = _create_orchestrator()
    try:
        warnings = orchestrator.teardown(profile, remove_data=remove_data)
    except (DeploymentError, OSError) as exc:
        raise _fail(str(exc)) from exc
    for warning in warnings:
        console.print(f"[yellow]warning[/yellow] ({warning.step}) {warning.message}")
    console.print(f"Installation '{profile.name}' removed.")
