# -----------------------------------------------------------------------------
# Remote Configuration Publisher Component
#
# Pulumi component resource that publishes the reverse proxy setup document
# and declares the setup-status record the remote run reports into. Nothing
# here executes the document; a pipeline sends it to the instance.
# -----------------------------------------------------------------------------

import json
import pulumi
import pulumi_aws as aws
import regex
from pulumi import ResourceOptions
from typing import Any, Dict, List, Optional, TypedDict

from document_templates import SsmDocumentTemplates
from host_channel import DEFAULT_TIMEOUT
from proxy_config import DesiredState
from status_record import SetupStatus
from validator import SsmDocumentValidator, StatusRecordValidator

REGION_CODES = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "eu-west-1": "euw1",
    "eu-central-1": "euc1",
    "ap-southeast-1": "apse1",
    "ap-northeast-1": "apne1",
}


class RemoteConfigPublisherArgs(TypedDict, total=False):
    """
    Arguments for the RemoteConfigPublisher component.

    Attributes:
        region: AWS region, used for the document name suffix
        namePrefix: Prefix to add to document names
        documentName: Base name of the setup document
        statusKey: Path of the setup-status parameter
        desiredState: Proxy configuration rendered into the document
        commandTimeout: Per-step timeout in seconds
    """

    region: str
    namePrefix: str
    documentName: str
    statusKey: str
    desiredState: DesiredState
    commandTimeout: int


def region_code(region_name: str) -> str:
    """
    Return a short code for *region_name* (us-east-1 -> use1).

    Regions missing from REGION_CODES use the first letters of the first two
    parts plus the last part.
    """
    if region_name in REGION_CODES:
        return REGION_CODES[region_name]
    parts = region_name.split("-")
    if len(parts) >= 3:
        return parts[0][0] + parts[1][0] + parts[2]
    return region_name


class RemoteConfigPublisher(pulumi.ComponentResource):
    """
    Pulumi component publishing the reverse proxy setup document.

    Attributes:
        document: The SSM command document
        status_record: The setup-status parameter
        document_name: Final document name including prefix and region code
    """

    def __init__(
        self,
        name: str,
        args: Optional[RemoteConfigPublisherArgs] = None,
        opts: Optional[ResourceOptions] = None,
    ):
        """
        Initialize the publisher component.

        Args:
            name: Name for this instance of the component
            args: Configuration arguments for the component
            opts: Pulumi resource options
        """
        super().__init__("cloudops:components:RemoteConfigPublisher", name, {}, opts)
        args = args or {}

        self._name = name
        self._region = args.get("region") or aws.config.region or "us-east-1"
        self._name_prefix = args.get("namePrefix", "")
        self._child_opts = ResourceOptions(parent=self)
        self._tags = {
            "department": "Cloud Ops",
            "deployedVia": "Pulumi",
            "region": self._region,
        }
        self._document_validator = SsmDocumentValidator()
        self._record_validator = StatusRecordValidator()

        state = args.get("desiredState") or DesiredState()
        status_key = args.get("statusKey", "/openclaw/nginx/setup-status")
        timeout = args.get("commandTimeout", DEFAULT_TIMEOUT)

        self.status_record = self.declare_status_record(
            status_key, SetupStatus.PENDING.value, SetupStatus.values()
        )
        self.document = self.publish_document(
            args.get("documentName", "Nginx-Proxy-Setup"),
            SsmDocumentTemplates.reverse_proxy_steps(state, timeout),
            SsmDocumentTemplates.reverse_proxy_parameters(state, status_key),
        )
        self.document_name = self.document.name

        self.register_outputs(
            {
                "document_name": self.document.name,
                "document_latest_version": self.document.latest_version,
                "status_parameter": self.status_record.name,
            }
        )

    def document_full_name(self, doc_name: str) -> str:
        if self._name_prefix:
            return f"{self._name_prefix}{doc_name}-{region_code(self._region)}"
        return f"{doc_name}-{region_code(self._region)}"

    def publish_document(
        self,
        doc_name: str,
        steps: List[Dict[str, Any]],
        parameter_schema: Dict[str, Any],
        description: str = "Install and configure an nginx HTTPS reverse proxy",
    ) -> aws.ssm.Document:
        """
        Validate and create a schema 2.2 command document.

        Args:
            doc_name: Base name for the document
            steps: Ordered mainSteps
            parameter_schema: Parameters every step placeholder must refer to
            description: Document description

        Returns:
            aws.ssm.Document: The created document resource

        Raises:
            ValueError: If the steps are empty or reference undeclared parameters
        """
        prefixed_name = self.document_full_name(doc_name)
        payload = {
            "schemaVersion": "2.2",
            "description": description,
            "parameters": parameter_schema,
            "mainSteps": steps,
        }

        try:
            self._document_validator.validate_document(payload, prefixed_name)

            return aws.ssm.Document(
                f"{self._name}-document",
                name=prefixed_name,
                document_type="Command",
                document_format="JSON",
                target_type="/AWS::EC2::Instance",
                tags=self._tags,
                content=json.dumps(payload, indent=2),
                opts=self._child_opts,
            )
        except Exception as e:
            pulumi.log.error(f"Error creating SSM document '{prefixed_name}': {str(e)}")
            raise

    def declare_status_record(
        self, key: str, initial_value: str, allowed_values: List[str]
    ) -> aws.ssm.Parameter:
        """
        Create the setup-status parameter.

        The value is owned by the remote run after creation, so later deploys
        ignore drift on it instead of resetting it to the initial value.

        Args:
            key: Parameter path, e.g. /openclaw/nginx/setup-status
            initial_value: Value written on creation
            allowed_values: Enumerated values the record may hold

        Returns:
            aws.ssm.Parameter: The created parameter
        """
        self._record_validator.validate_record(key, initial_value, allowed_values)
        return aws.ssm.Parameter(
            f"{self._name}-status",
            name=key,
            type="String",
            value=initial_value,
            allowed_pattern="^(" + "|".join(regex.escape(v) for v in allowed_values) + ")$",
            description="Reverse proxy setup status",
            tags=self._tags,
            opts=ResourceOptions(parent=self, ignore_changes=["value"]),
        )
