"""Shared fixtures: an in-memory proxy host and Pulumi mocks."""

from __future__ import annotations

import datetime
import re
from typing import Dict, List, Optional, Sequence, Set

import pulumi
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from host_channel import CommandResult
from proxy_config import DesiredState, ProxyRuleset

ACCOUNT_ID = "123456789012"


def make_certificate(common_name: str) -> tuple[str, str]:
    """Return a self-signed (cert PEM, key PEM) pair for *common_name*."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


MUTATING = ("install", "openssl", "chmod", "enable", "restart")


class FakeHost:
    """
    In-memory host answering the commands the configurator issues.

    Packages, files and services live in plain containers. The validate
    command accepts a config only when its ``proxy_pass`` port is in range,
    and probes answer once the service was restarted with a valid config.
    """

    def __init__(
        self,
        address: Optional[str] = "203.0.113.10",
        validate_binary: str = "proxy-server",
        imdsv2: bool = True,
    ) -> None:
        self.host = "fake-host"
        self.address = address
        self.imdsv2 = imdsv2
        self.validate_binary = validate_binary
        self.files: Dict[str, str] = {}
        self.packages: Set[str] = set()
        self.active: Set[str] = set()
        self.enabled: Set[str] = set()
        self.commands: List[List[str]] = []
        self.writes: List[str] = []

    # HostChannel ------------------------------------------------------------

    def run(self, argv: Sequence[str], *, timeout: int = 300) -> CommandResult:
        args = [str(a) for a in argv]
        self.commands.append(args)
        handler = getattr(self, f"_cmd_{args[0].replace('-', '_')}", None)
        if args[0] == self.validate_binary:
            return self._validate(args)
        if handler is None:
            return CommandResult(args, 127, "", f"{args[0]}: command not found")
        return handler(args)

    def read_file(self, path: str) -> Optional[str]:
        return self.files.get(path)

    def write_file(self, path: str, content: str, mode: int = 0o644) -> CommandResult:
        self.writes.append(path)
        self.files[path] = content
        return CommandResult(["write", path], 0)

    # Inspection helpers -------------------------------------------------------

    def issued(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.commands if c[: len(prefix)] == list(prefix)]

    def mutations(self) -> List[List[str]]:
        mutating = [c for c in self.commands if any(word in c[:3] for word in MUTATING)]
        return mutating + [["write", p] for p in self.writes]

    def reset_log(self) -> None:
        self.commands.clear()
        self.writes.clear()

    # Commands -----------------------------------------------------------------

    def _ok(self, args, stdout="") -> CommandResult:
        return CommandResult(args, 0, stdout)

    def _cmd_rpm(self, args):
        package = args[-1]
        if package in self.packages:
            return self._ok(args, f"{package}-1.0-1.x86_64\n")
        return CommandResult(args, 1, f"package {package} is not installed\n")

    def _cmd_yum(self, args):
        self.packages.update(args[3:])
        return self._ok(args)

    def _cmd_mkdir(self, args):
        return self._ok(args)

    def _cmd_chmod(self, args):
        return self._ok(args)

    def _cmd_test(self, args):
        return CommandResult(args, 0 if self.files.get(args[-1]) else 1)

    def _cmd_openssl(self, args):
        subject = args[args.index("-subj") + 1]
        common_name = subject.rsplit("/CN=", 1)[1]
        cert_pem, key_pem = make_certificate(common_name)
        self.files[args[args.index("-out") + 1]] = cert_pem
        self.files[args[args.index("-keyout") + 1]] = key_pem
        return self._ok(args)

    def _cmd_curl(self, args):
        url = next(a for a in args[1:] if a.startswith("http"))
        if "169.254.169.254" in url:
            return self._metadata(args, url)
        return self._probe(args, url)

    def _metadata(self, args, url):
        if url.endswith("/api/token"):
            if not self.imdsv2:
                return CommandResult(args, 22, "", "403 Forbidden")
            return self._ok(args, "token-abc")
        if self.address is None:
            return CommandResult(args, 22, "", "404 Not Found")
        return self._ok(args, self.address)

    def _probe(self, args, url):
        if not self.active:
            return CommandResult(args, 7, "000", "Failed to connect")
        if url.startswith("http://"):
            return self._ok(args, "301")
        # Without --http1.1 curl negotiates h2 and the upgrade headers are dropped.
        if "Upgrade: websocket" in args and "--http1.1" in args:
            return self._ok(args, "101")
        return self._ok(args, "200")

    def _cmd_systemctl(self, args):
        action, service = args[1], args[2]
        if action == "is-active":
            if service in self.active:
                return self._ok(args, "active\n")
            return CommandResult(args, 3, "inactive\n")
        if action == "is-enabled":
            if service in self.enabled:
                return self._ok(args, "enabled\n")
            return CommandResult(args, 1, "disabled\n")
        if action == "enable":
            self.enabled.add(service)
            return self._ok(args)
        if action == "restart":
            self.active.add(service)
            return self._ok(args)
        return CommandResult(args, 1, "", f"unknown action {action}")

    def _cmd_pgrep(self, args):
        return self._ok(args, "1\n")

    def _validate(self, args):
        for content in self.files.values():
            for port in re.findall(r"proxy_pass http://[^:]+:(\d+);", content):
                if not 0 < int(port) < 65536:
                    return CommandResult(
                        args, 1, "", f"invalid port in upstream \"localhost:{port}\""
                    )
        return self._ok(args, "configuration file test is successful\n")


def proxy_state(upstream_port: int = 8080) -> DesiredState:
    """Descriptor with package and service both named proxy-server."""
    return DesiredState(
        packages=("proxy-server",),
        service="proxy-server",
        validate_command=("proxy-server", "-t"),
        proxy=ProxyRuleset(upstream_port=upstream_port),
    )


class ListRecorder:
    def __init__(self) -> None:
        self.statuses: List[str] = []

    def record(self, status) -> None:
        self.statuses.append(status.value)


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def state() -> DesiredState:
    return proxy_state()


# Pulumi ---------------------------------------------------------------------


class Mocks(pulumi.runtime.Mocks):
    def __init__(self) -> None:
        self.resources: List[pulumi.runtime.MockResourceArgs] = []

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        self.resources.append(args)
        outputs = dict(args.inputs)
        outputs.setdefault("name", args.name)
        if args.typ in ("aws:iam/role:Role", "aws:iam/instanceProfile:InstanceProfile"):
            kind = "role" if args.typ.endswith("Role") else "instance-profile"
            outputs["arn"] = f"arn:aws:iam::{ACCOUNT_ID}:{kind}/{outputs['name']}"
        if args.typ == "aws:ssm/document:Document":
            outputs["latestVersion"] = "1"
            outputs["defaultVersion"] = "1"
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        if args.token == "aws:index/getCallerIdentity:getCallerIdentity":
            return {
                "accountId": ACCOUNT_ID,
                "arn": f"arn:aws:iam::{ACCOUNT_ID}:user/deployer",
                "id": ACCOUNT_ID,
                "userId": "AIDAEXAMPLE",
            }
        return {}


MOCKS = Mocks()
pulumi.runtime.set_mocks(MOCKS, preview=False)
