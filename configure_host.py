# -----------------------------------------------------------------------------
# configure-host CLI
#
# Runs the host configurator against one instance, either locally on the
# instance or remotely through SSM Run Command, and prints the result as JSON.
# -----------------------------------------------------------------------------

import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from host_channel import DEFAULT_TIMEOUT, HostChannel, HostCommandError, LocalChannel, SsmChannel
from health_probes import run_health_checks
from host_config import configure_host
from proxy_config import DesiredState
from status_record import SsmStatusRecorder

EXIT_STEP_FAILED = 1
EXIT_BAD_DESCRIPTOR = 2

app = typer.Typer(
    add_completion=False,
    help="Converge a host to an nginx HTTPS reverse proxy and report its health.",
)

DESCRIPTOR_OPTION = typer.Option(
    None,
    "--descriptor",
    "-d",
    help="YAML desired-state descriptor. Defaults apply when omitted.",
)
INSTANCE_OPTION = typer.Option(
    None,
    "--instance-id",
    help="Target EC2 instance, reached through SSM Run Command.",
)
REGION_OPTION = typer.Option(None, "--region", help="AWS region of the instance.")
LOCAL_OPTION = typer.Option(
    False,
    "--local",
    help="Run commands on this machine instead of through SSM.",
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log every step.")


def load_descriptor(path: Optional[Path]) -> DesiredState:
    """Read a YAML descriptor; a missing path yields the default state."""
    if path is None:
        return DesiredState()
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return DesiredState.from_mapping(data)


def open_channel(instance_id: Optional[str], region: Optional[str], local: bool) -> HostChannel:
    if local:
        return LocalChannel()
    if not instance_id:
        raise typer.BadParameter("--instance-id is required unless --local is given")
    return SsmChannel(instance_id, region=region)


def _setup(descriptor: Optional[Path], verbose: bool) -> DesiredState:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return load_descriptor(descriptor)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        typer.echo(f"invalid descriptor: {exc}", err=True)
        raise typer.Exit(code=EXIT_BAD_DESCRIPTOR)


@app.command()
def apply(
    descriptor: Optional[Path] = DESCRIPTOR_OPTION,
    instance_id: Optional[str] = INSTANCE_OPTION,
    region: Optional[str] = REGION_OPTION,
    local: bool = LOCAL_OPTION,
    status_parameter: Optional[str] = typer.Option(
        None,
        "--status-parameter",
        help="SSM parameter receiving in-progress/complete/failed.",
    ),
    timeout: int = typer.Option(DEFAULT_TIMEOUT, "--timeout", help="Per-command timeout in seconds."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Apply the desired state, halting at the first failing step."""
    state = _setup(descriptor, verbose)
    channel = open_channel(instance_id, region, local)
    recorder = SsmStatusRecorder(status_parameter, region=region) if status_parameter else None

    try:
        result = configure_host(channel, state, recorder, timeout=timeout)
    except HostCommandError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_STEP_FAILED)

    typer.echo(json.dumps(result.to_dict(), indent=2))
    if not result.succeeded:
        raise typer.Exit(code=EXIT_STEP_FAILED)


@app.command()
def health(
    descriptor: Optional[Path] = DESCRIPTOR_OPTION,
    instance_id: Optional[str] = INSTANCE_OPTION,
    region: Optional[str] = REGION_OPTION,
    local: bool = LOCAL_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Probe the proxy without changing anything."""
    state = _setup(descriptor, verbose)
    channel = open_channel(instance_id, region, local)
    try:
        report = run_health_checks(channel, state)
    except HostCommandError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_STEP_FAILED)

    typer.echo(json.dumps(report.to_dict(), indent=2))
    if not report.healthy:
        raise typer.Exit(code=EXIT_STEP_FAILED)


if __name__ == "__main__":
    app()
