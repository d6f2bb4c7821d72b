# -----------------------------------------------------------------------------
# Setup Status Record
#
# Enumerated values of the setup-status parameter and a recorder that writes
# them to SSM Parameter Store while a host is being configured.
# -----------------------------------------------------------------------------

import logging
from enum import Enum
from typing import Any, Optional, Protocol

import boto3

logger = logging.getLogger(__name__)


class SetupStatus(str, Enum):
    """Allowed values of the setup-status record."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"

    @classmethod
    def values(cls):
        return [status.value for status in cls]


def status_key(namespace: str, component: str, name: str = "setup-status") -> str:
    """Return the parameter path, e.g. ``/openclaw/nginx/setup-status``."""
    return f"/{namespace.strip('/')}/{component.strip('/')}/{name}"


class StatusRecorder(Protocol):
    def record(self, status: SetupStatus) -> None:
        ...


class SsmStatusRecorder:
    """Write setup progress to an existing SSM String parameter."""

    def __init__(self, parameter_name: str, region: Optional[str] = None, client: Any = None):
        self.parameter_name = parameter_name
        self.region = region
        self._client = client

    @property
    def _ssm(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self.region)
        return self._client

    def record(self, status: SetupStatus) -> None:
        logger.info("%s -> %s", self.parameter_name, status.value)
        self._ssm.put_parameter(
            Name=self.parameter_name,
            Value=status.value,
            Type="String",
            Overwrite=True,
        )
