from .base import EnvironmentHandle, ExecutionResult, Provisioner, provisioned, toolchain_env
from .docker import DockerProvisioner
from .host import HostProvisioner

__all__ = [
    "EnvironmentHandle",
    "ExecutionResult",
    "Provisioner",
    "provisioned",
    "toolchain_env",
    "DockerProvisioner",
    "HostProvisioner",
]
