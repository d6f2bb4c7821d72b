# -----------------------------------------------------------------------------
# Proxy Health Probes
#
# Post-configuration checks run on the target host. Probe failures are
# reported in the health report, never raised, so a caller can tell
# "configuration applied but unreachable" from "configuration failed".
# -----------------------------------------------------------------------------

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from host_channel import HostChannel
from proxy_config import DesiredState

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 10


@dataclass(frozen=True)
class ProbeSpec:
    """A single curl probe against the local proxy."""

    name: str
    scheme: str
    expected: int
    headers: Tuple[str, ...] = ()
    # HTTP/2 has no Upgrade mechanism, so ALPN would drop the headers.
    http1_only: bool = False

    def url(self, state: DesiredState) -> str:
        port = state.proxy.http_port if self.scheme == "http" else state.proxy.https_port
        default = 80 if self.scheme == "http" else 443
        suffix = "" if port == default else f":{port}"
        return f"{self.scheme}://localhost{suffix}/"

    def curl_command(self, state: DesiredState) -> List[str]:
        argv = ["curl", "-s", "-o", "/dev/null", "-w", "%{http_code}", "-m", str(PROBE_TIMEOUT)]
        if self.scheme == "https":
            argv.append("-k")
        if self.http1_only:
            argv.append("--http1.1")
        for header in self.headers:
            argv += ["-H", header]
        argv.append(self.url(state))
        return argv


HEALTH_PROBES: Tuple[ProbeSpec, ...] = (
    ProbeSpec("redirect", "http", 301),
    ProbeSpec("https", "https", 200),
    ProbeSpec(
        "upgrade-probe",
        "https",
        101,
        headers=("Upgrade: websocket", "Connection: Upgrade"),
        http1_only=True,
    ),
)


@dataclass(frozen=True)
class ProbeResult:
    """Observed status code of a probe, or the reason it produced none."""

    name: str
    expected: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status_code is None

    @property
    def ok(self) -> bool:
        return self.status_code == self.expected

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "expected": self.expected,
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass(frozen=True)
class HealthReport:
    """Service state, upstream process count and ordered probe results."""

    service_state: str
    process_count: int
    probes: Tuple[ProbeResult, ...]

    @property
    def healthy(self) -> bool:
        return self.service_state == "active" and all(p.ok for p in self.probes)

    def status_codes(self) -> Dict[str, Optional[int]]:
        return {probe.name: probe.status_code for probe in self.probes}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_state": self.service_state,
            "process_count": self.process_count,
            "healthy": self.healthy,
            "probes": [probe.to_dict() for probe in self.probes],
        }


def run_probe(channel: HostChannel, spec: ProbeSpec, state: DesiredState) -> ProbeResult:
    result = channel.run(spec.curl_command(state), timeout=PROBE_TIMEOUT + 5)
    code = result.stdout.strip()
    if not result.success or not code.isdigit() or code == "000":
        reason = result.stderr.strip() or f"curl exit {result.exit_code}"
        return ProbeResult(spec.name, spec.expected, error=reason)
    return ProbeResult(spec.name, spec.expected, status_code=int(code))


def run_health_checks(channel: HostChannel, state: DesiredState) -> HealthReport:
    """
    Probe the configured proxy on the target host.

    Args:
        channel: Transport to the host
        state: Desired state naming the service, process and ports

    Returns:
        HealthReport: Results in probe order
    """
    active = channel.run(["systemctl", "is-active", state.service])
    service_state = active.stdout.strip() or "unknown"

    # pgrep prints 0 and exits 1 when nothing matches.
    count = channel.run(["pgrep", "-c", "-f", state.process_name])
    raw = count.stdout.strip()
    process_count = int(raw) if raw.isdigit() else 0

    probes = tuple(run_probe(channel, spec, state) for spec in HEALTH_PROBES)
    report = HealthReport(service_state, process_count, probes)
    for probe in probes:
        if not probe.ok:
            logger.warning(
                "probe %s on %s: expected %s, got %s",
                probe.name,
                channel.host,
                probe.expected,
                probe.status_code if probe.status_code is not None else probe.error,
            )
    return report
