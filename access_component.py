# -----------------------------------------------------------------------------
# EC2 Access Component
#
# Pulumi component resource that creates the IAM role and instance profile an
# existing EC2 instance needs to be managed through SSM and report to
# CloudWatch. Attaching the profile to the instance happens out of band; the
# component exports the identifiers and the command that performs it.
# -----------------------------------------------------------------------------

import json
import pulumi
import pulumi_aws as aws
from pulumi import ResourceOptions
from typing import Dict, List, Optional, TypedDict

from validator import AccessGrantValidator

# Fixed catalogue of grants an instance role may carry.
MANAGED_POLICY_GRANTS: Dict[str, str] = {
    "AmazonSSMManagedInstanceCore": "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
    "CloudWatchAgentServerPolicy": "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy",
}

DEFAULT_GRANTS = ["AmazonSSMManagedInstanceCore", "CloudWatchAgentServerPolicy"]

ALLOWED_PRINCIPALS = ("ec2.amazonaws.com",)


class Ec2AccessRoleArgs(TypedDict, total=False):
    """
    Arguments for the Ec2AccessRole component.

    Attributes:
        instanceId: EC2 instance the profile is meant for
        trustedPrincipal: Service principal allowed to assume the role
        grants: Names from the managed policy catalogue
        statusParameter: Setup-status parameter the instance may write
        region: Region of the status parameter
        description: Role description
    """

    instanceId: str
    trustedPrincipal: str
    grants: List[str]
    statusParameter: str
    region: str
    description: str


class Ec2AccessRole(pulumi.ComponentResource):
    """
    Pulumi component for an SSM-managed EC2 instance identity.

    Attributes:
        role: The IAM role
        instance_profile: Instance profile wrapping the role
        attach_command: AWS CLI command attaching the profile to the instance
    """

    def __init__(
        self,
        name: str,
        args: Optional[Ec2AccessRoleArgs] = None,
        opts: Optional[ResourceOptions] = None,
    ):
        """
        Initialize the EC2 access component.

        Args:
            name: Name for this instance of the component
            args: Configuration arguments for the component
            opts: Pulumi resource options
        """
        super().__init__("cloudops:components:Ec2AccessRole", name, {}, opts)
        args = args or {}

        self._name = name
        self._region = args.get("region") or aws.config.region or "*"
        self._validator = AccessGrantValidator(MANAGED_POLICY_GRANTS, ALLOWED_PRINCIPALS)
        self.policy_attachments: List[aws.iam.RolePolicyAttachment] = []
        self._child_opts = ResourceOptions(parent=self)
        self._tags = {
            "department": "Cloud Ops",
            "deployedVia": "Pulumi",
            "component": name,
        }

        self.role = self.define_identity(
            args.get("trustedPrincipal", ALLOWED_PRINCIPALS[0]),
            args.get("grants", DEFAULT_GRANTS),
            description=args.get(
                "description", "EC2 instance role with SSM management permissions"
            ),
        )
        self.instance_profile = self.bind_to_resource(self.role, args.get("instanceId", ""))
        self.status_policy = None
        if args.get("statusParameter"):
            self.status_policy = self.grant_status_write(self.role, args["statusParameter"])

        self.attach_command = pulumi.Output.concat(
            "aws ec2 associate-iam-instance-profile --instance-id ",
            args.get("instanceId", ""),
            " --iam-instance-profile Name=",
            self.instance_profile.name,
        )

        self.register_outputs(
            {
                "role_arn": self.role.arn,
                "role_name": self.role.name,
                "instance_profile_arn": self.instance_profile.arn,
                "instance_profile_name": self.instance_profile.name,
                "attach_command": self.attach_command,
            }
        )

    def define_identity(
        self, trusted_principal: str, grants: List[str], description: str = ""
    ) -> aws.iam.Role:
        """
        Create a role trusted by *trusted_principal* carrying *grants*.

        Args:
            trusted_principal: Service principal allowed to assume the role
            grants: Grant names from MANAGED_POLICY_GRANTS
            description: Role description

        Returns:
            aws.iam.Role: The created role

        Raises:
            ValueError: If the principal or the grants are not allowed
        """
        self._validator.validate_identity(f"{self._name}-role", trusted_principal, grants)

        assume_role_policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": trusted_principal},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
        role = aws.iam.Role(
            f"{self._name}-role",
            assume_role_policy=json.dumps(assume_role_policy),
            description=description,
            tags=self._tags,
            opts=self._child_opts,
        )

        # dict.fromkeys keeps the order while dropping duplicates.
        for grant in dict.fromkeys(grants):
            attachment = aws.iam.RolePolicyAttachment(
                f"{self._name}-{grant}",
                role=role.name,
                policy_arn=MANAGED_POLICY_GRANTS[grant],
                opts=self._child_opts,
            )
            self.policy_attachments.append(attachment)
        return role

    def bind_to_resource(self, role: aws.iam.Role, instance_id: str) -> aws.iam.InstanceProfile:
        """
        Create the instance profile binding *role* to *instance_id*.

        The instance ID is recorded as a tag; the association itself is run
        by the deployment pipeline using ``attach_command``.

        Raises:
            ValueError: If *instance_id* is not an EC2 instance ID
        """
        self._validator.validate_binding(f"{self._name}-profile", instance_id)
        return aws.iam.InstanceProfile(
            f"{self._name}-profile",
            role=role.name,
            tags={**self._tags, "targetInstanceId": instance_id},
            opts=self._child_opts,
        )

    def grant_status_write(self, role: aws.iam.Role, parameter_name: str) -> aws.iam.RolePolicy:
        """
        Allow the instance to update exactly one SSM parameter.

        Args:
            role: Role receiving the inline policy
            parameter_name: Parameter path, e.g. /openclaw/nginx/setup-status

        Returns:
            aws.iam.RolePolicy: The inline policy
        """
        account_id = aws.get_caller_identity_output().account_id
        policy = account_id.apply(
            lambda account: json.dumps(
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Action": ["ssm:PutParameter", "ssm:GetParameter"],
                            "Resource": f"arn:aws:ssm:{self._region}:{account}:parameter{parameter_name}",
                        }
                    ],
                }
            )
        )
        return aws.iam.RolePolicy(
            f"{self._name}-status-write",
            role=role.id,
            policy=policy,
            opts=self._child_opts,
        )
