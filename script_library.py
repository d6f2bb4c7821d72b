# -----------------------------------------------------------------------------
# SSM Script Library
#
# Shell fragments for the proxy setup document. Each step is idempotent on
# its own: it checks the host first and prints "skipped-already-satisfied"
# instead of re-applying. Commands are built from the same helpers the host
# configurator runs, so both paths converge on identical state.
# -----------------------------------------------------------------------------

import shlex
from typing import List

from certificates import openssl_request_command
from health_probes import HEALTH_PROBES
from host_config import IMDS_URL, package_install_command, package_query_command
from proxy_config import DesiredState, render_proxy_config

HEREDOC_MARKER = "PROXY_CONFIG_EOF"


class SsmScriptLibrary:
    """
    Library of shell steps for the reverse proxy setup document.

    Every step starts with the same prelude: strict mode, a helper that writes
    the setup-status parameter, and an ERR trap that marks the run failed so a
    halted document never leaves the record at "in-progress".
    """

    @staticmethod
    def prelude() -> List[str]:
        """
        Common header for every shell step.

        Returns:
            List[str]: Shell lines referencing the ``statusParameter`` parameter
        """
        return [
            "#!/bin/bash",
            "set -euo pipefail",
            "STATUS_PARAMETER='{{ statusParameter }}'",
            "set_status() {",
            '  aws ssm put-parameter --name "$STATUS_PARAMETER" --type String --overwrite --value "$1" >/dev/null 2>&1 \\',
            '    || echo "WARNING: could not record status $1"',
            "}",
            "trap 'set_status failed' ERR",
        ]

    @staticmethod
    def skip(step_name: str) -> str:
        return f'echo "skipped-already-satisfied: {step_name}"'

    @staticmethod
    def state_digest(state: DesiredState) -> List[str]:
        """Digest of config + certificate, matching HostConfigurator's stamp."""
        config = shlex.quote(state.config_path)
        cert = shlex.quote(state.certificate.cert_path)
        return [
            f"DIGEST=$(cat {config} {cert} 2>/dev/null | sha256sum | cut -d' ' -f1 || true)",
            f"STAMP=$(cat {shlex.quote(state.stamp_path)} 2>/dev/null || true)",
        ]

    @staticmethod
    def install_packages(state: DesiredState) -> List[str]:
        checks = " && ".join(
            f"{shlex.join(package_query_command(state.package_manager, p))} >/dev/null 2>&1"
            for p in state.packages
        )
        return SsmScriptLibrary.prelude() + [
            "set_status in-progress",
            f"if {checks}; then",
            f"  {SsmScriptLibrary.skip('installPackage')}",
            "else",
            f"  {shlex.join(package_install_command(state.package_manager, state.packages))}",
            "fi",
        ]

    @staticmethod
    def generate_certificate(state: DesiredState) -> List[str]:
        """
        Regenerate the self-signed certificate only when the public address changed.

        Returns:
            List[str]: Shell lines discovering the address through IMDSv2 with
            an IMDSv1 fallback and comparing it with the installed CN
        """
        policy = state.certificate
        # The subject is double-quoted so the shell expands the discovered address.
        openssl = " ".join(
            f'"{arg}"' if "$INSTANCE_IP" in arg else shlex.quote(arg)
            for arg in openssl_request_command(policy, "$INSTANCE_IP")
        )
        return SsmScriptLibrary.prelude() + [
            f'TOKEN=$(curl -s -f -m 5 -X PUT "{IMDS_URL}/api/token" -H "X-aws-ec2-metadata-token-ttl-seconds: 300" || true)',
            'if [[ -n "$TOKEN" ]]; then',
            f'  INSTANCE_IP=$(curl -s -f -m 5 -H "X-aws-ec2-metadata-token: $TOKEN" {IMDS_URL}/meta-data/public-ipv4)',
            "else",
            f"  INSTANCE_IP=$(curl -s -f -m 5 {IMDS_URL}/meta-data/public-ipv4)",
            "fi",
            f"CURRENT_CN=$(openssl x509 -noout -subject -nameopt multiline -in {shlex.quote(policy.cert_path)} 2>/dev/null"
            " | sed -n 's/^ *commonName *= *//p' || true)",
            f'if [[ "$CURRENT_CN" == "$INSTANCE_IP" && -s {shlex.quote(policy.key_path)} ]]; then',
            f"  {SsmScriptLibrary.skip('generateCertificate')}",
            "else",
            f"  mkdir -p {shlex.quote(policy.directory)}",
            f"  {openssl}",
            f"  chmod 600 {shlex.quote(policy.key_path)}",
            "fi",
        ]

    @staticmethod
    def write_proxy_config(state: DesiredState) -> List[str]:
        """
        Write the nginx configuration through a temp file and replace it only on change.

        The upstream port comes from the ``upstreamPort`` document parameter.
        """
        target = shlex.quote(state.config_path)
        rendered = render_proxy_config(state, upstream_port="{{ upstreamPort }}")
        return (
            SsmScriptLibrary.prelude()
            + [
                "TMP=$(mktemp)",
                f"cat > \"$TMP\" <<'{HEREDOC_MARKER}'",
            ]
            + rendered.rstrip("\n").split("\n")
            + [
                HEREDOC_MARKER,
                f"if cmp -s \"$TMP\" {target}; then",
                "  rm -f \"$TMP\"",
                f"  {SsmScriptLibrary.skip('writeProxyConfig')}",
                "else",
                f"  mkdir -p $(dirname {target})",
                f"  install -m 0644 \"$TMP\" {target}",
                "  rm -f \"$TMP\"",
                "fi",
            ]
        )

    @staticmethod
    def _converged_check(state: DesiredState) -> List[str]:
        service = shlex.quote(state.service)
        return SsmScriptLibrary.state_digest(state) + [
            f'if [[ "$DIGEST" == "$STAMP" ]] && systemctl is-active --quiet {service}'
            f" && [[ \"$(systemctl is-enabled {service} 2>/dev/null)\" == enabled ]]; then",
        ]

    @staticmethod
    def validate_proxy_config(state: DesiredState) -> List[str]:
        return (
            SsmScriptLibrary.prelude()
            + SsmScriptLibrary._converged_check(state)
            + [
                f"  {SsmScriptLibrary.skip('validateProxyConfig')}",
                "else",
                f"  {shlex.join(state.validate_command)}",
                "fi",
            ]
        )

    @staticmethod
    def restart_service(state: DesiredState) -> List[str]:
        service = shlex.quote(state.service)
        stamp = shlex.quote(state.stamp_path)
        return (
            SsmScriptLibrary.prelude()
            + SsmScriptLibrary._converged_check(state)
            + [
                f"  {SsmScriptLibrary.skip('restartService')}",
                "else",
                f"  systemctl enable {service}",
                f"  systemctl restart {service}",
                f"  mkdir -p {shlex.quote(state.state_dir)}",
                f'  echo "$DIGEST" > {stamp}',
                "fi",
                f"systemctl status {service} --no-pager || true",
            ]
        )

    @staticmethod
    def health_check_script(state: DesiredState) -> List[str]:
        """
        Lines of the health-check script left on the host for operators.

        Reports the service state, the upstream process count and the three
        probes, mirroring ``health_probes.run_health_checks``.
        """
        lines = [
            "#!/bin/bash",
            'echo "=== reverse proxy health check ==="',
            f'echo "{state.service} status: $(systemctl is-active {shlex.quote(state.service)})"',
            f'echo "{state.process_name} processes: $(pgrep -c -f {shlex.quote(state.process_name)} || true)"',
        ]
        for probe in HEALTH_PROBES:
            lines += [
                f'echo "{probe.name} (expect {probe.expected}):"',
                f'{shlex.join(probe.curl_command(state))} || echo "FAILED"',
                "echo",
            ]
        lines.append('echo "checked: $(date)"')
        return lines

    @staticmethod
    def install_health_check(state: DesiredState) -> List[str]:
        path = shlex.quote(state.health_check_path)
        return (
            SsmScriptLibrary.prelude()
            + [
                f"mkdir -p $(dirname {path})",
                f"cat > {path} <<'HEALTH_EOF'",
            ]
            + SsmScriptLibrary.health_check_script(state)
            + ["HEALTH_EOF", f"chmod +x {path}"]
        )

    @staticmethod
    def run_health_check(state: DesiredState) -> List[str]:
        return SsmScriptLibrary.prelude() + [
            shlex.quote(state.health_check_path),
            "set_status complete",
            'echo "reverse proxy setup completed"',
        ]
