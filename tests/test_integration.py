"""Integration tests for the full provision-converge-destroy lifecycle.

Tests are sequential and stateful: each one depends on the deployment left by
the previous one. Run with:

    pytest tests/ -m integration --admin-source-ip 203.0.113.5/32
"""

import httpx
import pytest

from dockervm.bootstrap import ConvergencePlan, build_steps, converge
from dockervm.providers import AWSProvisioner
from dockervm.server import SSHRunner, check_instance_reachable, verify_http


@pytest.mark.integration
def test_01_outputs(live_deployment):
    """Instance is running with a public IP and the Ubuntu AMI it was created from."""
    config, outputs = live_deployment
    assert outputs["public_ip"]
    assert outputs["ami_id"].startswith("ami-")
    assert AWSProvisioner(config).outputs() == outputs
    assert check_instance_reachable(outputs["public_ip"], "ubuntu")


@pytest.mark.integration
def test_02_first_boot_serves_default_page(live_deployment):
    """User data converged at first boot: NGINX answers on port 8080."""
    _, outputs = live_deployment
    assert verify_http(outputs["public_ip"], port=8080), "Port 8080 never answered"

    response = httpx.get(f"http://{outputs['public_ip']}:8080/", timeout=30)
    assert response.status_code == 200
    assert "nginx" in response.text.lower()


@pytest.mark.integration
def test_03_first_boot_log(live_deployment):
    """The boot log ends in the converged state."""
    _, outputs = live_deployment
    runner = SSHRunner(outputs["public_ip"])
    code, output = runner.run("tail -n 1 /var/log/dockervm-converge.log", timeout=30)
    assert code == 0
    assert output.strip() == "dockervm: converged"


@pytest.mark.integration
def test_04_reconverge_is_idempotent(live_deployment):
    """Running the steps again succeeds and leaves exactly one container on 8080."""
    _, outputs = live_deployment
    runner = SSHRunner(outputs["public_ip"])

    result = converge(runner, build_steps(ConvergencePlan()))
    assert result.state == "converged"

    code, output = runner.run("docker ps -q --filter publish=8080", timeout=30)
    assert code == 0
    assert len(output.split()) == 1


@pytest.mark.integration
def test_05_ssh_restricted_to_admin(live_deployment):
    """Security group allows SSH only from the admin address."""
    config, _ = live_deployment
    p = AWSProvisioner(config)
    groups = p.ec2.describe_security_groups(
        Filters=[{"Name": "group-name", "Values": [config.resource_names["security_group"]]}]
    )["SecurityGroups"]
    ssh_rules = [r for r in groups[0]["IpPermissions"] if r.get("FromPort") == 22]
    cidrs = [ip_range["CidrIp"] for rule in ssh_rules for ip_range in rule["IpRanges"]]
    assert cidrs == [str(config.admin_source_ip)]
