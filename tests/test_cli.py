"""Tests for the cyclopts commands, called directly as functions."""

import json
import logging

import pytest
from botocore.exceptions import ClientError, WaiterError

from dockervm import cli
from dockervm.bootstrap import ConvergenceResult, StepTimeout


class FakeProvisioner:
    instances: list["FakeProvisioner"] = []
    fail = False
    stuck = False

    def __init__(self, config, aws_profile=None):
        self.config = config
        self.aws_profile = aws_profile
        self.user_data = None
        self.destroyed = False
        FakeProvisioner.instances.append(self)

    def validate_auth(self):
        pass

    def apply(self, user_data):
        if self.fail:
            raise ClientError(
                {"Error": {"Code": "UnauthorizedOperation", "Message": "denied"}}, "RunInstances"
            )
        if self.stuck:
            raise WaiterError("InstanceRunning", "Max attempts exceeded", {})
        self.user_data = user_data
        return {"instance_id": "i-1", "public_ip": "198.51.100.7", "ami_id": "ami-1"}

    def outputs(self):
        return None

    def destroy(self):
        self.destroyed = True


class RecordingRunner:
    def __init__(self, ip=None, user="ubuntu", code=0):
        self.ip = ip
        self.user = user
        self.code = code
        self.commands = []

    def run(self, command, timeout):
        self.commands.append(command)
        return self.code, ""


@pytest.fixture
def fake_provisioner(monkeypatch):
    FakeProvisioner.instances = []
    FakeProvisioner.fail = False
    FakeProvisioner.stuck = False
    monkeypatch.setattr(cli, "AWSProvisioner", FakeProvisioner)
    return FakeProvisioner


def test_resolve_prints_config(valid_params, capsys):
    config = cli.resolve_command(**valid_params)

    out = capsys.readouterr().out
    assert config.instance_size == "t2.micro"
    assert "10.0.10.0/24" in out
    assert "dev-security-group" in out


def test_resolve_reads_params_file(valid_params, tmp_path):
    params_file = tmp_path / "dev.json"
    params_file.write_text(json.dumps(valid_params))

    config = cli.resolve_command(params_file=str(params_file), instance_size="t3.small")

    assert config.instance_size == "t3.small"
    assert config.availability_zone == "us-east-1a"


def test_resolve_reports_every_error(valid_params, caplog):
    valid_params.update(subnet_cidr="192.168.1.0/24", admin_source_ip="203.0.113.5/24")

    with caplog.at_level(logging.ERROR, logger="dockervm"):
        with pytest.raises(SystemExit) as exc_info:
            cli.resolve_command(**valid_params)

    assert exc_info.value.code == 1
    assert "subnet_cidr" in caplog.text
    assert "admin_source_ip" in caplog.text
    assert "2 error(s)" in caplog.text


def test_user_data_prints_script(capsys):
    script = cli.user_data_command(restart_policy="unless-stopped")

    out = capsys.readouterr().out
    assert out == script
    assert out.startswith("#!/bin/bash\n")
    assert "--restart unless-stopped" in out


def test_user_data_rejects_bad_restart_policy():
    with pytest.raises(SystemExit):
        cli.user_data_command(restart_policy="sometimes")


def test_apply_provisions_with_rendered_script(valid_params, fake_provisioner, capsys):
    outputs = cli.apply_command(**valid_params, aws_profile="sandbox")

    assert outputs["public_ip"] == "198.51.100.7"
    p = fake_provisioner.instances[0]
    assert p.aws_profile == "sandbox"
    assert "docker run -d --name nginx -p 8080:80 nginx:stable" in p.user_data
    out = capsys.readouterr().out
    assert "198.51.100.7" in out
    assert "ami-1" in out


def test_apply_surfaces_provisioning_errors(valid_params, fake_provisioner, caplog):
    fake_provisioner.fail = True

    with pytest.raises(SystemExit):
        cli.apply_command(**valid_params)

    assert "UnauthorizedOperation" in caplog.text


def test_apply_surfaces_waiter_errors(valid_params, fake_provisioner, caplog):
    fake_provisioner.stuck = True

    with pytest.raises(SystemExit):
        cli.apply_command(**valid_params)

    assert "Max attempts exceeded" in caplog.text


def test_apply_stops_before_aws_on_invalid_config(valid_params, fake_provisioner):
    valid_params["subnet_cidr"] = "192.168.1.0/24"

    with pytest.raises(SystemExit):
        cli.apply_command(**valid_params)

    assert fake_provisioner.instances == []


def test_outputs_without_instance_exits(fake_provisioner):
    with pytest.raises(SystemExit):
        cli.outputs_command()


def test_destroy_cancelled(fake_provisioner, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "no")

    cli.destroy_command()

    assert fake_provisioner.instances == []


def test_destroy_forced(fake_provisioner):
    cli.destroy_command(environment_prefix="staging", region="eu-west-1", force=True)

    p = fake_provisioner.instances[0]
    assert p.destroyed
    assert p.config.resource_names["vpc"] == "staging-vpc"
    assert p.config.region == "eu-west-1"


def test_destroy_ignores_missing_key_file(valid_params, fake_provisioner, tmp_path):
    valid_params["public_key_path"] = str(tmp_path / "rotated.pub")
    params_file = tmp_path / "dev.json"
    params_file.write_text(json.dumps(valid_params))

    cli.destroy_command(params_file=str(params_file), force=True)

    assert fake_provisioner.instances[0].destroyed


def test_destroy_rejects_invalid_region(fake_provisioner, caplog):
    with pytest.raises(SystemExit):
        cli.destroy_command(region="mars-1", force=True)

    assert "region" in caplog.text
    assert fake_provisioner.instances == []


def test_converge_requires_one_target():
    with pytest.raises(SystemExit):
        cli.converge_command()
    with pytest.raises(SystemExit):
        cli.converge_command("198.51.100.7", local=True)


def test_converge_over_ssh(monkeypatch, capsys):
    runners = []

    def make_runner(ip, user="ubuntu"):
        runners.append(RecordingRunner(ip, user))
        return runners[-1]

    monkeypatch.setattr(cli, "SSHRunner", make_runner)

    result = cli.converge_command("198.51.100.7", user="admin")

    assert isinstance(result, ConvergenceResult)
    assert result.state == "converged"
    assert runners[0].ip == "198.51.100.7"
    assert runners[0].user == "admin"
    assert len(runners[0].commands) == 4
    assert capsys.readouterr().out.strip() == "converged"


def test_converge_reports_failed_step(monkeypatch, caplog):
    monkeypatch.setattr(cli, "SSHRunner", lambda ip, user="ubuntu": RecordingRunner(ip, user, code=1))

    with pytest.raises(SystemExit):
        cli.converge_command("198.51.100.7")

    assert "failed-at-step-1" in caplog.text


def test_converge_reports_timeout(monkeypatch, caplog):
    class SlowRunner:
        def run(self, command, timeout):
            raise StepTimeout(f"timed out after {timeout}s")

    monkeypatch.setattr(cli, "LocalRunner", SlowRunner)

    with pytest.raises(SystemExit):
        cli.converge_command(local=True, step_timeout=7)

    assert "timed-out-at-step-1" in caplog.text
    assert "7s" in caplog.text


def test_verify_passes(monkeypatch, capsys):
    monkeypatch.setattr(cli, "check_instance_reachable", lambda ip, user: True)
    monkeypatch.setattr(cli, "check_http_status", lambda url: (200, "HTTP 200 OK"))

    cli.verify_command("198.51.100.7")

    assert "All checks passed!" in capsys.readouterr().out


def test_verify_fails_when_port_closed(monkeypatch, capsys):
    monkeypatch.setattr(cli, "check_instance_reachable", lambda ip, user: True)
    monkeypatch.setattr(cli, "check_http_status", lambda url: (None, "Connection refused"))

    with pytest.raises(SystemExit):
        cli.verify_command("198.51.100.7")

    assert "port 8080" in capsys.readouterr().out


def test_verify_accepts_redirect(monkeypatch, capsys):
    monkeypatch.setattr(cli, "check_instance_reachable", lambda ip, user: True)
    monkeypatch.setattr(cli, "check_http_status", lambda url: (301, "HTTP 301 Moved Permanently"))

    cli.verify_command("198.51.100.7")

    out = capsys.readouterr().out
    assert "[OK] HTTP" in out
    assert "All checks passed!" in out


def test_main_sets_log_level_then_runs_app(monkeypatch):
    calls = []
    monkeypatch.setenv("DOCKERVM_LOG_LEVEL", "DEBUG")
    monkeypatch.setattr(cli, "setup_logging", lambda level: calls.append(("logging", level)))
    monkeypatch.setattr(cli, "app", lambda: calls.append(("app",)))

    cli.main()

    assert calls == [("logging", "DEBUG"), ("app",)]
