# -----------------------------------------------------------------------------
# Host Command Channels
#
# Transports used by the host configurator to run commands on a target host:
# a local subprocess channel and an SSM Run Command channel.
# -----------------------------------------------------------------------------

import base64
import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence

import boto3
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_delay, wait_fixed

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300


class HostCommandError(RuntimeError):
    """Raised when a command cannot be delivered to the host at all."""

    def __init__(self, message: str, argv: Sequence[str] = ()):
        super().__init__(message)
        self.argv = list(argv)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command on the target host."""

    argv: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def command(self) -> str:
        return shlex.join(self.argv)


class HostChannel(Protocol):
    """Minimal interface the configurator needs from a transport."""

    host: str

    def run(self, argv: Sequence[str], *, timeout: int = DEFAULT_TIMEOUT) -> CommandResult:
        ...

    def read_file(self, path: str) -> Optional[str]:
        ...

    def write_file(self, path: str, content: str, mode: int = 0o644) -> CommandResult:
        ...


class ShellChannel:
    """
    Base class implementing file access on top of ``run``.

    Subclasses only provide ``run``. Files are read with ``cat`` and written
    through a base64 pipe so arbitrary content survives any transport quoting.
    """

    host: str = "localhost"

    def run(self, argv: Sequence[str], *, timeout: int = DEFAULT_TIMEOUT) -> CommandResult:
        raise NotImplementedError

    def read_file(self, path: str) -> Optional[str]:
        result = self.run(["cat", path])
        if not result.success:
            return None
        return result.stdout

    def write_file(self, path: str, content: str, mode: int = 0o644) -> CommandResult:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        target = shlex.quote(path)
        script = (
            f"printf '%s' {encoded} | base64 -d > {target}.tmp"
            f" && chmod {mode:o} {target}.tmp"
            f" && mv {target}.tmp {target}"
        )
        return self.run(["sh", "-c", script])


class LocalChannel(ShellChannel):
    """Run commands on this machine, e.g. from the instance itself."""

    def __init__(self, host: str = "localhost") -> None:
        self.host = host

    def run(self, argv: Sequence[str], *, timeout: int = DEFAULT_TIMEOUT) -> CommandResult:
        args = [str(arg) for arg in argv]
        logger.debug("local: %s", shlex.join(args))
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(args, 127, "", f"{args[0]} not found: {exc}")
        except subprocess.TimeoutExpired:
            return CommandResult(args, 124, "", f"timed out after {timeout}s")
        return CommandResult(args, completed.returncode, completed.stdout, completed.stderr)


class _InvocationPending(Exception):
    pass


class SsmChannel(ShellChannel):
    """
    Run commands on an EC2 instance through SSM Run Command.

    Each command is sent as an ``AWS-RunShellScript`` invocation and polled
    until the agent reports a terminal status.
    """

    def __init__(
        self,
        instance_id: str,
        region: Optional[str] = None,
        client: Any = None,
        poll_interval: float = 2.0,
    ) -> None:
        self.host = instance_id
        self.region = region
        self.poll_interval = poll_interval
        self._client = client

    @property
    def _ssm(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self.region)
        return self._client

    def run(self, argv: Sequence[str], *, timeout: int = DEFAULT_TIMEOUT) -> CommandResult:
        args = [str(arg) for arg in argv]
        command = shlex.join(args)
        logger.debug("ssm %s: %s", self.host, command)
        try:
            response = self._ssm.send_command(
                InstanceIds=[self.host],
                DocumentName="AWS-RunShellScript",
                Parameters={"commands": [command], "executionTimeout": [str(timeout)]},
                TimeoutSeconds=max(30, min(timeout, 3600)),
            )
        except Exception as exc:
            raise HostCommandError(f"send_command to {self.host} failed: {exc}", args) from exc
        command_id = response["Command"]["CommandId"]

        @retry(
            stop=stop_after_delay(timeout + 30),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(_InvocationPending),
        )
        def _poll() -> CommandResult:
            try:
                invocation = self._ssm.get_command_invocation(
                    CommandId=command_id, InstanceId=self.host
                )
            except self._ssm.exceptions.InvocationDoesNotExist:
                raise _InvocationPending()

            status = invocation["Status"]
            if status in ("Pending", "InProgress", "Delayed"):
                raise _InvocationPending()
            exit_code = int(invocation.get("ResponseCode", -1))
            if status == "Success":
                exit_code = 0
            elif exit_code == 0:
                exit_code = 1
            stderr = invocation.get("StandardErrorContent", "")
            if status in ("TimedOut", "Cancelled") and not stderr:
                stderr = f"Command {status}"
            return CommandResult(
                args, exit_code, invocation.get("StandardOutputContent", ""), stderr
            )

        try:
            return _poll()
        except RetryError as exc:
            raise HostCommandError(
                f"Command {command_id} on {self.host} did not finish within {timeout}s",
                args,
            ) from exc
