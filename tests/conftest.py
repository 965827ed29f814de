"""Shared fixtures: generated public keys and a live AWS deployment for integration tests."""

import base64
import os
from pathlib import Path
from uuid import uuid4

import pytest

from dockervm.bootstrap import plan_for, render_user_data
from dockervm.config import ENV_PREFIX, resolve_config
from dockervm.providers import AWSProvisioner
from dockervm.server import wait_for_ssh


def _field(data: bytes) -> bytes:
    return len(data).to_bytes(4, "big") + data


def make_public_key(key_type: str = "ssh-ed25519", comment: str = "test@dockervm") -> str:
    """Build a well-formed OpenSSH public key line (not a usable key)."""
    blob = _field(key_type.encode()) + _field(bytes(range(32)))
    return f"{key_type} {base64.b64encode(blob).decode()} {comment}\n"


def pytest_addoption(parser):
    parser.addoption(
        "--region",
        default="us-east-1",
        help="AWS region for integration tests (default: us-east-1)",
    )
    parser.addoption(
        "--admin-source-ip",
        default=os.getenv(f"{ENV_PREFIX}ADMIN_SOURCE_IP"),
        help="Your public IP as a /32, allowed to SSH into the test host",
    )
    parser.addoption(
        "--public-key-path",
        default=str(Path.home() / ".ssh" / "id_ed25519.pub"),
        help="Public key imported into AWS for the test host",
    )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep DOCKERVM_* variables from the developer's shell out of unit tests."""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key)


@pytest.fixture
def public_key_file(tmp_path) -> Path:
    path = tmp_path / "id_ed25519.pub"
    path.write_text(make_public_key())
    return path


@pytest.fixture
def valid_params(public_key_file) -> dict:
    return {
        "environment_prefix": "dev",
        "network_cidr": "10.0.0.0/16",
        "subnet_cidr": "10.0.10.0/24",
        "availability_zone": "us-east-1a",
        "admin_source_ip": "203.0.113.5/32",
        "instance_size": "t2.micro",
        "public_key_path": str(public_key_file),
    }


@pytest.fixture(scope="session")
def live_deployment(request):
    """Provision a real deployment, yield (config, outputs), destroy on teardown."""
    admin_source_ip = request.config.getoption("--admin-source-ip")
    if not admin_source_ip:
        pytest.skip("--admin-source-ip (or DOCKERVM_ADMIN_SOURCE_IP) is required")

    config = resolve_config(
        {
            "environment_prefix": f"test-dockervm-{uuid4().hex[:8]}",
            "region": request.config.getoption("--region"),
            "admin_source_ip": admin_source_ip,
            "public_key_path": request.config.getoption("--public-key-path"),
        }
    )
    p = AWSProvisioner(config)
    p.validate_auth()

    print(f"\n[INFO] Provisioning '{config.environment_prefix}'...")
    try:
        outputs = p.apply(render_user_data(plan_for(config)))
        wait_for_ssh(outputs["public_ip"], user="ubuntu")
        yield config, outputs
    finally:
        try:
            p.destroy()
        except (Exception, SystemExit):
            pass
