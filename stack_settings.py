# -----------------------------------------------------------------------------
# Stack Settings
#
# Reads the stack configuration from Pulumi.yaml / Pulumi.<stack>.yaml into a
# single settings object shared by both components.
# -----------------------------------------------------------------------------

from dataclasses import dataclass
from typing import List, Optional

import pulumi

from access_component import DEFAULT_GRANTS
from host_channel import DEFAULT_TIMEOUT
from proxy_config import DesiredState
from status_record import status_key


@dataclass(frozen=True)
class StackSettings:
    instance_id: str
    region: Optional[str]
    namespace: str
    component: str
    name_prefix: str
    grants: List[str]
    desired_state: DesiredState
    command_timeout: int

    @property
    def status_parameter(self) -> str:
        return status_key(self.namespace, self.component)


def load_settings(config: Optional[pulumi.Config] = None) -> StackSettings:
    """
    Load stack settings.

    ``instanceId`` is required; everything else falls back to the defaults
    used by the proxy hosts.

    Raises:
        ValueError: If ``desiredState`` contains unknown or invalid settings
    """
    config = config or pulumi.Config()
    return StackSettings(
        instance_id=config.require("instanceId"),
        region=config.get("region"),
        namespace=config.get("namespace") or "openclaw",
        component=config.get("component") or "nginx",
        name_prefix=config.get("namePrefix") or "",
        grants=config.get_object("grants") or list(DEFAULT_GRANTS),
        desired_state=DesiredState.from_mapping(config.get_object("desiredState")),
        command_timeout=config.get_int("commandTimeout") or DEFAULT_TIMEOUT,
    )
