"""Post-create remote provisioning."""

from cloud_provisioner.provisioners.runner import (
    ConnectionInfo,
    ProvisionerPhase,
    ProvisionerRun,
    ProvisionerRunner,
    RemoteAuthenticationError,
    RemoteConnectionError,
    RemoteExecutor,
)
from cloud_provisioner.provisioners.ssh import SSHExecutor

__all__ = [
    "ConnectionInfo",
    "ProvisionerPhase",
    "ProvisionerRun",
    "ProvisionerRunner",
    "RemoteAuthenticationError",
    "RemoteConnectionError",
    "RemoteExecutor",
    "SSHExecutor",
]
