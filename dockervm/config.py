"""Parameter resolution: raw deployment parameters to a validated config.

Raw parameters come from environment variables, a JSON params file and CLI
flags (see :func:`collect_parameters`). :func:`resolve_config` applies
defaults, validates every field and returns an immutable
:class:`DeploymentConfig`, or raises :class:`ConfigError` naming every
invalid field at once.
"""

import base64
import binascii
import hashlib
import ipaddress
import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .types import RawParameters, ResourceKind

ENV_PREFIX = "DOCKERVM_"

REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ca-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-west-3",
    "eu-central-1",
    "eu-north-1",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-south-1",
    "sa-east-1",
]

# Smallest first; t2.micro is the free-tier class available in every region.
INSTANCE_SIZES = [
    "t2.nano",
    "t2.micro",
    "t2.small",
    "t2.medium",
    "t2.large",
    "t3.nano",
    "t3.micro",
    "t3.small",
    "t3.medium",
    "t3.large",
    "t3.xlarge",
    "t3.2xlarge",
    "m5.large",
    "m5.xlarge",
    "m5.2xlarge",
    "m6i.large",
    "m6i.xlarge",
    "c5.large",
    "c5.xlarge",
]

PARAMETERS = (
    "environment_prefix",
    "region",
    "network_cidr",
    "subnet_cidr",
    "availability_zone",
    "admin_source_ip",
    "instance_size",
    "public_key_path",
)
REQUIRED = ("admin_source_ip", "public_key_path")

# availability_zone has no static default: it is the region's first zone.
DEFAULTS = {
    "environment_prefix": "dev",
    "region": "us-east-1",
    "network_cidr": "10.0.0.0/16",
    "subnet_cidr": "10.0.10.0/24",
    "instance_size": "t2.micro",
}

KEY_TYPES = (
    "ssh-rsa",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
)

# AWS accepts VPC and subnet blocks between /16 and /28.
MIN_PREFIXLEN = 16
MAX_PREFIXLEN = 28

PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,31}$")

RESOURCE_KINDS: tuple[ResourceKind, ...] = (
    "vpc",
    "subnet",
    "internet_gateway",
    "route_table",
    "security_group",
    "key_pair",
    "instance",
)


class ConfigError(ValueError):
    """Raised when deployment parameters fail validation.

    :param errors: Mapping of parameter name to error message, one entry per
        invalid field
    """

    def __init__(self, errors: dict[str, str]):
        self.errors = dict(errors)
        super().__init__(
            "; ".join(f"{field}: {msg}" for field, msg in self.errors.items())
        )


@dataclass(frozen=True)
class DeploymentScope:
    """Where a deployment lives: enough to find its resources by tag."""

    environment_prefix: str
    region: str

    @property
    def resource_names(self) -> dict[str, str]:
        return {
            kind: f"{self.environment_prefix}-{kind.replace('_', '-')}"
            for kind in RESOURCE_KINDS
        }


@dataclass(frozen=True)
class DeploymentConfig(DeploymentScope):
    network_cidr: ipaddress.IPv4Network
    subnet_cidr: ipaddress.IPv4Network
    availability_zone: str
    admin_source_ip: ipaddress.IPv4Network
    instance_size: str
    public_key_path: Path
    public_key: str
    key_fingerprint: str

    def as_dict(self) -> dict[str, str]:
        return {
            "environment_prefix": self.environment_prefix,
            "region": self.region,
            "network_cidr": str(self.network_cidr),
            "subnet_cidr": str(self.subnet_cidr),
            "availability_zone": self.availability_zone,
            "admin_source_ip": str(self.admin_source_ip),
            "instance_size": self.instance_size,
            "public_key_path": str(self.public_key_path),
            "key_fingerprint": self.key_fingerprint,
        }


def parse_public_key(text: str) -> tuple[str, str]:
    """Parse an OpenSSH public key line.

    :param text: Public key file content
    :return: (key_line, md5_fingerprint)
    :raises ValueError: If the content is not a supported public key
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if len(lines) != 1:
        raise ValueError("expected exactly one public key line")
    parts = lines[0].split()
    if len(parts) < 2:
        raise ValueError("expected '<type> <base64> [comment]'")
    key_type, key_data = parts[0], parts[1]
    if key_type not in KEY_TYPES:
        raise ValueError(f"unsupported key type '{key_type}'")
    try:
        decoded = base64.b64decode(key_data, validate=True)
    except binascii.Error:
        raise ValueError("key data is not valid base64") from None
    # The blob starts with a length-prefixed copy of the key type.
    type_len = int.from_bytes(decoded[:4], "big")
    if decoded[4 : 4 + type_len].decode("ascii", "replace") != key_type:
        raise ValueError("key data does not match key type")
    fingerprint = hashlib.md5(decoded).hexdigest()
    fingerprint = ":".join(fingerprint[i : i + 2] for i in range(0, 32, 2))
    return lines[0], fingerprint


def _parse_network(value: str) -> ipaddress.IPv4Network:
    """Parse an IPv4 CIDR block within AWS's size limits.

    :raises ValueError: With a message suitable for the field's error entry
    """
    if "/" not in value:
        raise ValueError(f"'{value}' is not a CIDR block")
    try:
        network = ipaddress.IPv4Network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR '{value}': {e}") from None
    if not MIN_PREFIXLEN <= network.prefixlen <= MAX_PREFIXLEN:
        raise ValueError(
            f"prefix length must be between /{MIN_PREFIXLEN} and /{MAX_PREFIXLEN}, "
            f"got /{network.prefixlen}"
        )
    return network


def _parse_admin_source_ip(value: str) -> ipaddress.IPv4Network:
    try:
        network = ipaddress.IPv4Network(value, strict=False)
    except ValueError as e:
        raise ValueError(f"invalid IPv4 address '{value}': {e}") from None
    if network.prefixlen != 32:
        raise ValueError(f"mask must be /32, got /{network.prefixlen}")
    return network


def _read_public_key(value: str) -> tuple[Path, str, str]:
    path = Path(value).expanduser()
    if not path.is_file():
        raise ValueError(f"'{path}' does not exist or is not a file")
    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"'{path}' is not readable: {e}") from None
    try:
        key_line, fingerprint = parse_public_key(text)
    except ValueError as e:
        raise ValueError(f"'{path}' is not a valid public key: {e}") from None
    return path, key_line, fingerprint


def _known_values(raw: Mapping[str, object], errors: dict[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for key, value in raw.items():
        if key not in PARAMETERS:
            errors[key] = "unknown parameter"
            continue
        text = "" if value is None else str(value).strip()
        if text:
            values[key] = text
    return values


def _check_scope(values: Mapping[str, str], errors: dict[str, str]) -> tuple[str, str]:
    prefix = values.get("environment_prefix", DEFAULTS["environment_prefix"])
    if not PREFIX_PATTERN.match(prefix):
        errors["environment_prefix"] = (
            f"'{prefix}' must be 1-32 letters, digits or hyphens, "
            "starting with a letter or digit"
        )

    region = values.get("region", DEFAULTS["region"])
    if region not in REGIONS:
        errors["region"] = f"unsupported region '{region}'"
    return prefix, region


def resolve_scope(raw: Mapping[str, object]) -> DeploymentScope:
    """Resolve only the prefix and region, for commands that look resources up.

    Other known parameters are accepted and ignored, so a params file shared
    with ``apply`` still works when the key file or admin address is gone.

    :param raw: Mapping of parameter name to raw value
    :raises ConfigError: On unknown parameters or an invalid prefix or region
    """
    errors: dict[str, str] = {}
    values = _known_values(raw, errors)
    prefix, region = _check_scope(values, errors)
    if errors:
        raise ConfigError(errors)
    return DeploymentScope(environment_prefix=prefix, region=region)


def resolve_config(raw: Mapping[str, object]) -> DeploymentConfig:
    """Resolve raw parameters into a validated deployment config.

    Omitted optional parameters take their defaults. Every field is checked
    and all failures are reported together.

    :param raw: Mapping of parameter name to raw value
    :return: Fully resolved config
    :raises ConfigError: If any parameter is missing or invalid
    """
    errors: dict[str, str] = {}
    values = _known_values(raw, errors)

    for key in REQUIRED:
        if key not in values:
            errors[key] = f"{key} is required"

    prefix, region = _check_scope(values, errors)

    zone = values.get("availability_zone", f"{region}a")
    if not re.fullmatch(re.escape(region) + "[a-z]", zone):
        errors["availability_zone"] = f"'{zone}' is not a zone in region '{region}'"

    size = values.get("instance_size", DEFAULTS["instance_size"])
    if size not in INSTANCE_SIZES:
        errors["instance_size"] = f"unsupported instance size '{size}'"

    network = subnet = None
    try:
        network = _parse_network(values.get("network_cidr", DEFAULTS["network_cidr"]))
        if not network.is_private:
            errors["network_cidr"] = f"'{network}' is not a private range"
    except ValueError as e:
        errors["network_cidr"] = str(e)
    try:
        subnet = _parse_network(values.get("subnet_cidr", DEFAULTS["subnet_cidr"]))
    except ValueError as e:
        errors["subnet_cidr"] = str(e)
    if network is not None and subnet is not None and not subnet.subnet_of(network):
        errors["subnet_cidr"] = f"'{subnet}' is not contained in network_cidr '{network}'"

    admin = None
    if "admin_source_ip" in values:
        try:
            admin = _parse_admin_source_ip(values["admin_source_ip"])
        except ValueError as e:
            errors["admin_source_ip"] = str(e)

    key_path = key_line = fingerprint = None
    if "public_key_path" in values:
        try:
            key_path, key_line, fingerprint = _read_public_key(values["public_key_path"])
        except ValueError as e:
            errors["public_key_path"] = str(e)

    if errors:
        raise ConfigError(errors)

    return DeploymentConfig(
        environment_prefix=prefix,
        region=region,
        network_cidr=network,
        subnet_cidr=subnet,
        availability_zone=zone,
        admin_source_ip=admin,
        instance_size=size,
        public_key_path=key_path,
        public_key=key_line,
        key_fingerprint=fingerprint,
    )


def collect_parameters(
    params_file: str | Path | None = None,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RawParameters:
    """Gather raw parameters from the environment, a params file and overrides.

    Later sources win: ``DOCKERVM_*`` environment variables (after loading
    ``.env``), then the JSON params file, then explicit overrides. ``None``
    overrides are skipped so unset CLI flags do not mask other sources.

    :param params_file: Path to a JSON object of parameter name to value
    :param overrides: Explicit values, typically from CLI flags
    :param environ: Environment mapping (default: ``os.environ`` after ``.env``)
    :return: Raw parameter mapping for :func:`resolve_config`
    :raises ConfigError: If the params file is missing or malformed
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    raw: dict[str, object] = {}
    for name in PARAMETERS:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value:
            raw[name] = value

    if params_file is not None:
        path = Path(params_file)
        try:
            data = json.loads(path.read_text())
        except OSError as e:
            raise ConfigError({"params_file": f"cannot read '{path}': {e}"}) from None
        except json.JSONDecodeError as e:
            raise ConfigError({"params_file": f"'{path}' is not valid JSON: {e}"}) from None
        if not isinstance(data, dict):
            raise ConfigError({"params_file": f"'{path}' must contain a JSON object"})
        raw.update(data)

    for name, value in (overrides or {}).items():
        if value is not None:
            raw[name] = value

    return raw
