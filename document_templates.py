# -----------------------------------------------------------------------------
# SSM Document Templates
#
# Command document templates published by the remote configuration stack.
# -----------------------------------------------------------------------------

from typing import Any, Dict, List

from host_channel import DEFAULT_TIMEOUT
from proxy_config import DesiredState
from script_library import SsmScriptLibrary
from status_record import SetupStatus


class SsmDocumentTemplates:
    """
    Collection of SSM document templates for reverse proxy hosts.

    Templates are split into a parameter schema and an ordered step list so
    the publisher can validate one against the other before creating the
    document.
    """

    @staticmethod
    def shell_step(name: str, commands: List[str], timeout: int = DEFAULT_TIMEOUT) -> Dict[str, Any]:
        """
        Build one ``aws:runShellScript`` step that aborts the document on failure.

        Args:
            name: Step name, alphanumeric with hyphen or underscore
            commands: Shell lines of the step
            timeout: Step timeout in seconds

        Returns:
            Dict[str, Any]: The step definition
        """
        return {
            "name": name,
            "action": "aws:runShellScript",
            "precondition": {"StringEquals": ["platformType", "Linux"]},
            "onFailure": "Abort",
            "inputs": {
                "timeoutSeconds": timeout,
                "runCommand": commands,
            },
        }

    @staticmethod
    def reverse_proxy_parameters(state: DesiredState, status_parameter: str) -> Dict[str, Any]:
        """
        Create the parameter schema of the reverse proxy setup document.

        Args:
            state: Desired state providing defaults
            status_parameter: Default name of the setup-status record

        Returns:
            Dict[str, Any]: Parameter definitions keyed by name
        """
        return {
            "instanceId": {
                "type": "String",
                "default": "",
                "description": "EC2 instance ID being configured (informational)",
            },
            "upstreamPort": {
                "type": "String",
                "default": str(state.proxy.upstream_port),
                "allowedPattern": "^[0-9]{1,5}$",
                "description": "Local port the proxy forwards to",
            },
            "statusParameter": {
                "type": "String",
                "default": status_parameter,
                "description": f"SSM parameter receiving {', '.join(SetupStatus.values())}",
            },
        }

    @staticmethod
    def reverse_proxy_steps(state: DesiredState, timeout: int = DEFAULT_TIMEOUT) -> List[Dict[str, Any]]:
        """
        Create the ordered steps that install and configure the reverse proxy.

        Each step is idempotent and the document aborts at the first failure,
        so the restart step never runs when validation fails.

        Args:
            state: Desired state rendered into the steps
            timeout: Per-step timeout in seconds

        Returns:
            List[Dict[str, Any]]: Steps in execution order
        """
        step = SsmDocumentTemplates.shell_step
        return [
            step("installPackage", SsmScriptLibrary.install_packages(state), timeout),
            step("generateCertificate", SsmScriptLibrary.generate_certificate(state), timeout),
            step("writeProxyConfig", SsmScriptLibrary.write_proxy_config(state), timeout),
            step("validateProxyConfig", SsmScriptLibrary.validate_proxy_config(state), timeout),
            step("restartService", SsmScriptLibrary.restart_service(state), timeout),
            step("installHealthCheck", SsmScriptLibrary.install_health_check(state), timeout),
            step("runHealthCheck", SsmScriptLibrary.run_health_check(state), timeout),
        ]

    @staticmethod
    def reverse_proxy_setup(
        state: DesiredState, status_parameter: str, timeout: int = DEFAULT_TIMEOUT
    ) -> Dict[str, Any]:
        """
        Create the complete reverse proxy setup document.

        Returns:
            Dict[str, Any]: A complete SSM document template as a dictionary
        """
        return {
            "schemaVersion": "2.2",
            "description": "Install and configure an nginx HTTPS reverse proxy",
            "parameters": SsmDocumentTemplates.reverse_proxy_parameters(state, status_parameter),
            "mainSteps": SsmDocumentTemplates.reverse_proxy_steps(state, timeout),
        }
