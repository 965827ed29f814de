"""Type definitions for dockervm."""

from typing import Literal, TypedDict

ResourceKind = Literal[
    "vpc",
    "subnet",
    "internet_gateway",
    "route_table",
    "security_group",
    "key_pair",
    "instance",
]
FailureKind = Literal["failed", "timed-out"]


class RawParameters(TypedDict, total=False):
    """Unvalidated deployment parameters, as supplied by the operator."""

    environment_prefix: str
    region: str
    network_cidr: str
    subnet_cidr: str
    availability_zone: str
    admin_source_ip: str
    instance_size: str
    public_key_path: str


class DeploymentOutputs(TypedDict):
    """Observable outputs of a provisioned deployment."""

    instance_id: str
    public_ip: str
    ami_id: str
