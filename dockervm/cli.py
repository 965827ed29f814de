#!/usr/bin/env python3
"""Provision an EC2 host that runs NGINX in Docker.

Prerequisites: AWS credentials (aws configure or AWS_PROFILE), an SSH key pair.

Usage: dockervm <noun> <verb> [options]

Examples:
    dockervm config resolve --admin-source-ip 203.0.113.5/32 --public-key-path ~/.ssh/id_ed25519.pub
    dockervm config user-data
    dockervm infra apply --params-file dev.json --wait
    dockervm infra outputs --params-file dev.json
    dockervm host converge 198.51.100.7
    dockervm host verify 198.51.100.7
"""

import os
import sys

import cyclopts
from botocore.exceptions import ClientError, WaiterError
from rich import print

from .bootstrap import (
    STEP_TIMEOUT,
    ConvergenceError,
    LocalRunner,
    build_steps,
    converge,
    plan_for,
    render_user_data,
)
from .config import (
    ConfigError,
    DeploymentConfig,
    DeploymentScope,
    collect_parameters,
    resolve_config,
    resolve_scope,
)
from .providers import AWSProvisioner
from .server import (
    SSHRunner,
    check_http_status,
    check_instance_reachable,
    verify_http,
    wait_for_ssh,
)
from .utils import error, log, logger, setup_logging

app = cyclopts.App(
    name="dockervm", help="Provision an EC2 host running NGINX in Docker", sort_key=None
)

config_app = cyclopts.App(name="config", help="Resolve and render configuration", sort_key=1)
infra_app = cyclopts.App(name="infra", help="Create and destroy AWS resources", sort_key=2)
host_app = cyclopts.App(name="host", help="Converge and verify a host", sort_key=3)

app.command(config_app)
app.command(infra_app)
app.command(host_app)

SSH_USER = "ubuntu"


def load_config(params_file: str | None = None, **overrides) -> DeploymentConfig:
    """Collect and resolve parameters, exiting with every validation error.

    :param params_file: JSON params file
    :param overrides: Parameter values from CLI flags (None means unset)
    """
    try:
        return resolve_config(collect_parameters(params_file, overrides))
    except ConfigError as e:
        for field, msg in e.errors.items():
            logger.error(f"{field}: {msg}")
        error(f"Invalid configuration ({len(e.errors)} error(s))")


def load_scope(params_file: str | None = None, **overrides) -> DeploymentScope:
    """Resolve only the prefix and region, for commands that find resources by tag.

    :param params_file: JSON params file
    :param overrides: Parameter values from CLI flags (None means unset)
    """
    try:
        return resolve_scope(collect_parameters(params_file, overrides))
    except ConfigError as e:
        for field, msg in e.errors.items():
            logger.error(f"{field}: {msg}")
        error(f"Invalid configuration ({len(e.errors)} error(s))")


def _plan(restart_policy: str | None, step_timeout: int = STEP_TIMEOUT):
    try:
        return plan_for(restart_policy=restart_policy, step_timeout=step_timeout)
    except ValueError as e:
        error(str(e))


@config_app.command(name="resolve")
def resolve_command(
    *,
    params_file: str | None = None,
    environment_prefix: str | None = None,
    region: str | None = None,
    network_cidr: str | None = None,
    subnet_cidr: str | None = None,
    availability_zone: str | None = None,
    admin_source_ip: str | None = None,
    instance_size: str | None = None,
    public_key_path: str | None = None,
):
    """Validate parameters and show the resolved configuration.

    Parameters can also be set as DOCKERVM_<NAME> environment variables
    (or in .env) and in a JSON params file; flags take precedence.

    :param params_file: JSON file of parameter name to value
    :param environment_prefix: Name prefix for every resource (default: dev)
    :param region: AWS region (default: us-east-1)
    :param network_cidr: VPC CIDR block (default: 10.0.0.0/16)
    :param subnet_cidr: Subnet CIDR block inside the VPC (default: 10.0.10.0/24)
    :param availability_zone: Zone for the subnet (default: region's first zone)
    :param admin_source_ip: Address allowed to SSH in, as a /32
    :param instance_size: EC2 instance type (default: t2.micro)
    :param public_key_path: OpenSSH public key to install on the host
    """
    config = load_config(
        params_file,
        environment_prefix=environment_prefix,
        region=region,
        network_cidr=network_cidr,
        subnet_cidr=subnet_cidr,
        availability_zone=availability_zone,
        admin_source_ip=admin_source_ip,
        instance_size=instance_size,
        public_key_path=public_key_path,
    )
    data = config.as_dict()
    width = max(len(k) for k in data)
    for key, value in data.items():
        print(f"  {key.ljust(width)}  {value}")
    print("\nResource names:")
    for kind, name in config.resource_names.items():
        print(f"  {kind.ljust(width)}  {name}")
    return config


@config_app.command(name="user-data")
def user_data_command(*, restart_policy: str | None = None, step_timeout: int = STEP_TIMEOUT):
    """Print the first-boot script attached to the instance.

    :param restart_policy: Docker restart policy for the container (default: none)
    :param step_timeout: Seconds before a step is treated as timed out
    """
    script = render_user_data(_plan(restart_policy, step_timeout))
    sys.stdout.write(script)
    return script


@infra_app.command(name="apply")
def apply_command(
    *,
    params_file: str | None = None,
    environment_prefix: str | None = None,
    region: str | None = None,
    network_cidr: str | None = None,
    subnet_cidr: str | None = None,
    availability_zone: str | None = None,
    admin_source_ip: str | None = None,
    instance_size: str | None = None,
    public_key_path: str | None = None,
    restart_policy: str | None = None,
    aws_profile: str | None = None,
    wait: bool = False,
):
    """Create (or reuse) the network, security group and instance.

    :param params_file: JSON file of parameter name to value
    :param environment_prefix: Name prefix for every resource (default: dev)
    :param region: AWS region (default: us-east-1)
    :param network_cidr: VPC CIDR block (default: 10.0.0.0/16)
    :param subnet_cidr: Subnet CIDR block inside the VPC (default: 10.0.10.0/24)
    :param availability_zone: Zone for the subnet (default: region's first zone)
    :param admin_source_ip: Address allowed to SSH in, as a /32
    :param instance_size: EC2 instance type (default: t2.micro)
    :param public_key_path: OpenSSH public key to install on the host
    :param restart_policy: Docker restart policy for the container (default: none)
    :param aws_profile: AWS profile name (default: AWS_PROFILE)
    :param wait: Wait for SSH and verify the web port after creation
    """
    config = load_config(
        params_file,
        environment_prefix=environment_prefix,
        region=region,
        network_cidr=network_cidr,
        subnet_cidr=subnet_cidr,
        availability_zone=availability_zone,
        admin_source_ip=admin_source_ip,
        instance_size=instance_size,
        public_key_path=public_key_path,
    )
    user_data = render_user_data(_plan(restart_policy))

    p = AWSProvisioner(config, aws_profile=aws_profile)
    p.validate_auth()
    log(
        f"Provisioning '{config.environment_prefix}' in '{config.availability_zone}' "
        f"('{config.instance_size}')..."
    )
    try:
        outputs = p.apply(user_data)
    except (ClientError, WaiterError) as e:
        error(f"Provisioning failed: {e}")

    log("Instance ready!")
    print(f"  IP: {outputs['public_ip']}")
    print(f"  AMI: {outputs['ami_id']}")
    print(f"  SSH: ssh {SSH_USER}@{outputs['public_ip']}")
    print(f"  URL: http://{outputs['public_ip']}:8080/")

    if wait:
        wait_for_ssh(outputs["public_ip"], user=SSH_USER)
        if not verify_http(outputs["public_ip"]):
            error(
                f"Web port not answering on '{outputs['public_ip']}'. "
                f"Check /var/log/dockervm-converge.log on the host."
            )
    return outputs


@infra_app.command(name="outputs")
def outputs_command(
    *,
    params_file: str | None = None,
    environment_prefix: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
):
    """Show the public IP and AMI of the running instance.

    :param params_file: JSON file of parameter name to value
    :param environment_prefix: Name prefix for every resource (default: dev)
    :param region: AWS region (default: us-east-1)
    :param aws_profile: AWS profile name (default: AWS_PROFILE)
    """
    config = load_scope(params_file, environment_prefix=environment_prefix, region=region)
    p = AWSProvisioner(config, aws_profile=aws_profile)
    p.validate_auth()
    try:
        outputs = p.outputs()
    except ClientError as e:
        error(f"Lookup failed: {e}")
    if not outputs:
        error(f"No running instance named '{config.resource_names['instance']}'")

    print(f"  Instance: {outputs['instance_id']}")
    print(f"  IP: {outputs['public_ip']}")
    print(f"  AMI: {outputs['ami_id']}")
    return outputs


@infra_app.command(name="destroy")
def destroy_command(
    *,
    params_file: str | None = None,
    environment_prefix: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
    force: bool = False,
):
    """Delete the instance and every resource created for it.

    :param params_file: JSON file of parameter name to value
    :param environment_prefix: Name prefix for every resource (default: dev)
    :param region: AWS region (default: us-east-1)
    :param aws_profile: AWS profile name (default: AWS_PROFILE)
    :param force: Skip confirmation prompt
    """
    config = load_scope(params_file, environment_prefix=environment_prefix, region=region)

    print("[yellow]Resources to delete:[/yellow]")
    for name in config.resource_names.values():
        print(f"  {name}")
    print(f"  Region: {config.region}")

    if not force:
        confirm = input("Delete these resources? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    p = AWSProvisioner(config, aws_profile=aws_profile)
    p.validate_auth()
    try:
        p.destroy()
    except (ClientError, WaiterError) as e:
        error(f"Destroy failed: {e}")
    log("Resources deleted")


@host_app.command(name="converge")
def converge_command(
    ip: str | None = None,
    *,
    local: bool = False,
    user: str = SSH_USER,
    restart_policy: str | None = None,
    step_timeout: int = STEP_TIMEOUT,
):
    """Run the first-boot steps now, over SSH or on this machine.

    Safe to re-run: installed packages and a running service are left alone,
    and the container is replaced rather than duplicated.

    :param ip: Host IP address (omit with --local)
    :param local: Run on this machine (must be root)
    :param user: SSH user with passwordless sudo
    :param restart_policy: Docker restart policy for the container (default: none)
    :param step_timeout: Seconds before a step is treated as timed out
    """
    if local == (ip is not None):
        error("Give either a host IP or --local")

    runner = LocalRunner() if local else SSHRunner(ip, user=user)
    steps = build_steps(_plan(restart_policy, step_timeout))
    log(f"Converging {'this machine' if local else repr(ip)}...")
    try:
        result = converge(runner, steps)
    except ConvergenceError as e:
        error(f"{e.state}: {e}")
    print(result.state)
    return result


@host_app.command(name="verify")
def verify_command(ip: str, *, port: int = 8080, user: str = SSH_USER):
    """Check SSH access and the web port of a host.

    :param ip: Host IP address
    :param port: Public web port
    :param user: SSH user
    """
    print(f"Verifying '{ip}'...")
    print("-" * 40)
    issues = []

    if check_instance_reachable(ip, user):
        print("[OK] SSH: reachable")
    else:
        print("[FAIL] SSH: not reachable")
        issues.append("SSH connection failed")

    status_code, response_line = check_http_status(f"http://{ip}:{port}/")
    if status_code is not None and 200 <= status_code < 400:
        print(f"[OK] HTTP: port {port} responding ({response_line})")
    elif status_code:
        print(f"[WARN] HTTP: '{response_line}'")
    else:
        print(f"[FAIL] HTTP: '{response_line}'")
        issues.append(f"HTTP not responding on port {port}")

    print("-" * 40)
    if issues:
        print(f"Issues found ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
        error("Verification failed")
    print("All checks passed!")


def main():
    setup_logging(os.getenv("DOCKERVM_LOG_LEVEL", "INFO"))
    app()


if __name__ == "__main__":
    main()
