# -----------------------------------------------------------------------------
# Proxy Host Provisioning
#
# Grants an existing EC2 instance SSM access, then publishes the document that
# turns it into an nginx HTTPS reverse proxy along with its status record.
# -----------------------------------------------------------------------------

import pulumi
import pulumi_aws as aws

from access_component import Ec2AccessRole
from ssm_component import RemoteConfigPublisher
from stack_settings import load_settings

settings = load_settings()

opts = None
if settings.region:
    provider = aws.Provider(f"aws-{settings.region}", region=settings.region)
    opts = pulumi.ResourceOptions(provider=provider)

# The instance identity must exist before anything is sent to the instance
access = Ec2AccessRole(
    f"{settings.namespace}-{settings.component}-access",
    args={
        "instanceId": settings.instance_id,
        "grants": settings.grants,
        "statusParameter": settings.status_parameter,
        "region": settings.region,
    },
    opts=opts,
)

publisher = RemoteConfigPublisher(
    f"{settings.namespace}-{settings.component}-setup",
    args={
        "region": settings.region,
        "namePrefix": settings.name_prefix,
        "statusKey": settings.status_parameter,
        "desiredState": settings.desired_state,
        "commandTimeout": settings.command_timeout,
    },
    opts=pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(depends_on=[access])),
)

pulumi.export("role_arn", access.role.arn)
pulumi.export("role_name", access.role.name)
pulumi.export("instance_profile_arn", access.instance_profile.arn)
pulumi.export("instance_profile_name", access.instance_profile.name)
pulumi.export("attach_command", access.attach_command)
pulumi.export("document_name", publisher.document.name)
pulumi.export("document_version", publisher.document.latest_version)
pulumi.export("status_parameter", publisher.status_record.name)
pulumi.export(
    "send_command",
    pulumi.Output.concat(
        "aws ssm send-command --document-name ",
        publisher.document.name,
        " --instance-ids ",
        settings.instance_id,
    ),
)
