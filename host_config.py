# -----------------------------------------------------------------------------
# Host Configurator
#
# Idempotent reconciler that brings a target host to a DesiredState over a
# HostChannel. Steps run strictly in order; each probes the current state
# first and only applies changes when its postcondition does not hold. The
# first failing step halts the run and nothing is rolled back.
# -----------------------------------------------------------------------------

import hashlib
import ipaddress
import logging
import posixpath
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from certificates import installed_common_name, needs_regeneration, openssl_request_command
from health_probes import HealthReport, run_health_checks
from host_channel import DEFAULT_TIMEOUT, CommandResult, HostChannel, HostCommandError
from proxy_config import DesiredState, render_proxy_config
from status_record import SetupStatus, StatusRecorder

logger = logging.getLogger(__name__)

IMDS_URL = "http://169.254.169.254/latest"
TRANSPORT_FAILURE = -1


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped-already-satisfied"


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: StepStatus
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass(frozen=True)
class StepFailure:
    """The step that halted a run and the command that failed inside it."""

    step: str
    command: str
    exit_code: int
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "command": self.command,
            "exit_code": self.exit_code,
            "stderr": self.stderr,
        }


@dataclass(frozen=True)
class ConfigurationResult:
    """
    Outcome of one configurator run.

    Attributes:
        host: Identifier of the target host
        steps: Outcomes of the steps that ran, in order
        failure: Details of the halting step, if any
        health: Health report; only collected when no step failed
        pending: Steps never reached because of a halt
    """

    host: str
    steps: Tuple[StepOutcome, ...]
    failure: Optional[StepFailure] = None
    health: Optional[HealthReport] = None
    pending: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def committed(self) -> Tuple[str, ...]:
        """Steps that changed the host before the run ended."""
        return tuple(s.name for s in self.steps if s.status is StepStatus.SUCCESS)

    def statuses(self) -> Dict[str, StepStatus]:
        return {step.name: step.status for step in self.steps}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "succeeded": self.succeeded,
            "steps": [step.to_dict() for step in self.steps],
            "committed": list(self.committed),
            "pending": list(self.pending),
            "failure": self.failure.to_dict() if self.failure else None,
            "health": self.health.to_dict() if self.health else None,
        }


class StepError(Exception):
    """Raised inside a step when a command on the host fails."""

    def __init__(self, result: CommandResult, message: Optional[str] = None):
        self.result = result
        super().__init__(message or result.stderr.strip() or f"exit {result.exit_code}")


@dataclass
class RunContext:
    """State shared between the steps of a single run."""

    channel: HostChannel
    state: DesiredState
    timeout: int = DEFAULT_TIMEOUT
    address: Optional[str] = None
    certificate_pem: Optional[str] = None
    config: str = ""
    changed: bool = False

    def run(self, argv: Sequence[str]) -> CommandResult:
        return self.channel.run(argv, timeout=self.timeout)

    def check(self, argv: Sequence[str]) -> CommandResult:
        result = self.run(argv)
        if not result.success:
            raise StepError(result)
        return result

    def write(self, path: str, content: str, mode: int = 0o644) -> None:
        self.check(["mkdir", "-p", posixpath.dirname(path)])
        result = self.channel.write_file(path, content, mode)
        if not result.success:
            raise StepError(result)

    def digest(self) -> str:
        payload = self.config + (self.certificate_pem or "")
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def stamp_matches(self) -> bool:
        stamp = self.channel.read_file(self.state.stamp_path)
        return stamp is not None and stamp.strip() == self.digest()


# -----------------------------------------------------------------------------
# Command builders shared with the published document
# -----------------------------------------------------------------------------


def package_query_command(manager: str, package: str) -> List[str]:
    if manager == "apt":
        return ["dpkg-query", "-W", "-f=${Status}", package]
    return ["rpm", "-q", package]


def package_install_command(manager: str, packages: Sequence[str]) -> List[str]:
    if manager == "apt":
        return ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", *packages]
    return [manager, "install", "-y", *packages]


def discover_public_address(channel: HostChannel) -> str:
    """
    Read the host's public IPv4 from instance metadata.

    Uses an IMDSv2 session token when one can be obtained and falls back to
    IMDSv1 otherwise.

    Raises:
        StepError: If the metadata service returns no valid address
    """
    token = channel.run(
        [
            "curl", "-s", "-f", "-m", "5", "-X", "PUT", f"{IMDS_URL}/api/token",
            "-H", "X-aws-ec2-metadata-token-ttl-seconds: 300",
        ]
    )
    argv = ["curl", "-s", "-f", "-m", "5"]
    if token.success and token.stdout.strip():
        argv += ["-H", f"X-aws-ec2-metadata-token: {token.stdout.strip()}"]
    argv.append(f"{IMDS_URL}/meta-data/public-ipv4")
    result = channel.run(argv)
    address = result.stdout.strip()
    if not result.success or not address:
        raise StepError(result, "could not discover public address")
    try:
        ipaddress.ip_address(address)
    except ValueError:
        raise StepError(result, f"metadata returned invalid address '{address}'")
    return address


# -----------------------------------------------------------------------------
# Steps
# -----------------------------------------------------------------------------


class Step:
    name = ""

    def satisfied(self, ctx: RunContext) -> bool:
        raise NotImplementedError

    def apply(self, ctx: RunContext) -> None:
        raise NotImplementedError


class InstallPackages(Step):
    name = "install"

    def _missing(self, ctx: RunContext) -> List[str]:
        missing = []
        for package in ctx.state.packages:
            result = ctx.run(package_query_command(ctx.state.package_manager, package))
            installed = result.success
            if ctx.state.package_manager == "apt":
                installed = installed and "install ok installed" in result.stdout
            if not installed:
                missing.append(package)
        return missing

    def satisfied(self, ctx):
        self.missing = self._missing(ctx)
        return not self.missing

    def apply(self, ctx):
        ctx.check(package_install_command(ctx.state.package_manager, self.missing))


class GenerateCertificate(Step):
    name = "cert-generate"

    def __init__(self, address_resolver: Callable[[HostChannel], str]):
        self.address_resolver = address_resolver

    def satisfied(self, ctx):
        policy = ctx.state.certificate
        ctx.address = self.address_resolver(ctx.channel)
        ctx.certificate_pem = ctx.channel.read_file(policy.cert_path)
        key_present = ctx.run(["test", "-s", policy.key_path]).success
        return not needs_regeneration(ctx.certificate_pem, ctx.address, key_present)

    def apply(self, ctx):
        policy = ctx.state.certificate
        ctx.check(["mkdir", "-p", policy.directory])
        ctx.check(openssl_request_command(policy, ctx.address))
        ctx.check(["chmod", "600", policy.key_path])
        ctx.certificate_pem = ctx.channel.read_file(policy.cert_path)
        if installed_common_name(ctx.certificate_pem) != ctx.address:
            raise StepError(
                CommandResult(["cat", policy.cert_path], 1),
                f"generated certificate does not name {ctx.address}",
            )


class WriteProxyConfig(Step):
    name = "config-write"

    def satisfied(self, ctx):
        ctx.config = render_proxy_config(ctx.state)
        return ctx.channel.read_file(ctx.state.config_path) == ctx.config

    def apply(self, ctx):
        ctx.write(ctx.state.config_path, ctx.config)


def service_converged(ctx: RunContext) -> bool:
    """True when nothing changed this run and the running service matches the stamp."""
    if ctx.changed or not ctx.stamp_matches():
        return False
    service = ctx.state.service
    active = ctx.run(["systemctl", "is-active", service]).stdout.strip()
    enabled = ctx.run(["systemctl", "is-enabled", service]).stdout.strip()
    return active == "active" and enabled == "enabled"


class ValidateProxyConfig(Step):
    name = "config-validate"

    def satisfied(self, ctx):
        return service_converged(ctx)

    def apply(self, ctx):
        ctx.check(list(ctx.state.validate_command))


class RestartService(Step):
    name = "service-restart"

    def satisfied(self, ctx):
        return service_converged(ctx)

    def apply(self, ctx):
        ctx.check(["systemctl", "enable", ctx.state.service])
        ctx.check(["systemctl", "restart", ctx.state.service])
        ctx.write(ctx.state.stamp_path, ctx.digest() + "\n")


# -----------------------------------------------------------------------------
# Configurator
# -----------------------------------------------------------------------------


class HostConfigurator:
    """
    Converge one host to a desired state and report its health.

    Concurrent runs against the same host are not coordinated here; callers
    must serialise them.
    """

    def __init__(
        self,
        channel: HostChannel,
        state: DesiredState,
        recorder: Optional[StatusRecorder] = None,
        address_resolver: Callable[[HostChannel], str] = discover_public_address,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.channel = channel
        self.state = state
        self.recorder = recorder
        self.timeout = timeout
        self.steps: Tuple[Step, ...] = (
            InstallPackages(),
            GenerateCertificate(address_resolver),
            WriteProxyConfig(),
            ValidateProxyConfig(),
            RestartService(),
        )

    def apply(self) -> ConfigurationResult:
        """
        Run every step in order, halting at the first failure.

        Returns:
            ConfigurationResult: Per-step outcomes plus a health report when
            the run did not halt
        """
        ctx = RunContext(self.channel, self.state, timeout=self.timeout)
        self._record(SetupStatus.IN_PROGRESS)
        outcomes: List[StepOutcome] = []

        for index, step in enumerate(self.steps):
            try:
                if step.satisfied(ctx):
                    outcome = StepOutcome(step.name, StepStatus.SKIPPED)
                else:
                    step.apply(ctx)
                    ctx.changed = True
                    outcome = StepOutcome(step.name, StepStatus.SUCCESS)
            except (StepError, HostCommandError) as exc:
                failure = self._failure(step, exc)
                outcomes.append(StepOutcome(step.name, StepStatus.FAILED, str(exc)))
                logger.error(
                    "%s: step %s failed: %s (exit %s)",
                    self.channel.host,
                    step.name,
                    failure.command,
                    failure.exit_code,
                )
                self._record(SetupStatus.FAILED)
                return ConfigurationResult(
                    host=self.channel.host,
                    steps=tuple(outcomes),
                    failure=failure,
                    pending=tuple(s.name for s in self.steps[index + 1:]),
                )
            logger.info("%s: %s %s", self.channel.host, step.name, outcome.status.value)
            outcomes.append(outcome)

        self._record(SetupStatus.COMPLETE)
        health = run_health_checks(self.channel, self.state)
        return ConfigurationResult(
            host=self.channel.host, steps=tuple(outcomes), health=health
        )

    @staticmethod
    def _failure(step: Step, exc: Exception) -> StepFailure:
        if isinstance(exc, StepError):
            return StepFailure(step.name, exc.result.command, exc.result.exit_code, str(exc))
        # The command never reported an exit status.
        return StepFailure(step.name, shlex.join(exc.argv), TRANSPORT_FAILURE, str(exc))

    def _record(self, status: SetupStatus) -> None:
        if self.recorder is not None:
            self.recorder.record(status)


def configure_host(
    channel: HostChannel,
    state: DesiredState,
    recorder: Optional[StatusRecorder] = None,
    **kwargs: Any,
) -> ConfigurationResult:
    """Convenience wrapper around ``HostConfigurator(...).apply()``."""
    return HostConfigurator(channel, state, recorder, **kwargs).apply()
