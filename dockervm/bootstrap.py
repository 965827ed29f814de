"""First-boot convergence: install Docker and run the NGINX container.

The same four steps are used two ways: rendered into a cloud-init user-data
script that runs once at first boot, and run one at a time from Python
through a :class:`Runner` (locally or over SSH) by :func:`converge`.
"""

import re
import subprocess
from dataclasses import dataclass, field
from textwrap import dedent
from typing import Protocol

from .config import DeploymentConfig
from .types import FailureKind
from .utils import log, logger, shell_quote

STEP_TIMEOUT = 300
TIMEOUT_EXIT_CODE = 124
CONVERGE_LOG = "/var/log/dockervm-converge.log"

RESTART_POLICY_PATTERN = re.compile(r"^(no|always|unless-stopped|on-failure(:\d+)?)$")


class StepTimeout(Exception):
    """Raised by a runner when a command exceeds its timeout."""


class ConvergenceError(Exception):
    """A convergence step failed; earlier steps are not rolled back.

    :param step: 1-based step number
    :param name: Step name
    :param kind: "failed" for a non-zero exit, "timed-out" for a timeout
    :param detail: Command output or error text
    """

    def __init__(self, step: int, name: str, kind: FailureKind, detail: str = ""):
        self.step = step
        self.name = name
        self.kind = kind
        self.detail = detail
        message = f"Step {step} ({name}) {kind}"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def state(self) -> str:
        return f"{self.kind}-at-step-{self.step}"


@dataclass(frozen=True)
class ConvergencePlan:
    image: str = "nginx:stable"
    container_name: str = "nginx"
    host_port: int = 8080
    container_port: int = 80
    runtime_package: str = "docker.io"
    runtime_service: str = "docker"
    runtime_group: str = "docker"
    admin_user: str = "ubuntu"
    step_timeout: int = STEP_TIMEOUT
    restart_policy: str | None = None


@dataclass(frozen=True)
class ConvergenceStep:
    number: int
    name: str
    command: str
    timeout: int


@dataclass
class ConvergenceResult:
    state: str = "converged"
    completed: list[str] = field(default_factory=list)


class Runner(Protocol):
    def run(self, command: str, timeout: int) -> tuple[int, str]: ...


class LocalRunner:
    """Run steps on this machine with bash. Must already be root."""

    def run(self, command: str, timeout: int) -> tuple[int, str]:
        try:
            result = subprocess.run(
                ["bash", "-c", command],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise StepTimeout(f"timed out after {timeout}s") from None
        output = (result.stdout + result.stderr).strip()
        for line in output.splitlines():
            if line.strip():
                logger.info(line)
        return result.returncode, output


def plan_for(
    config: DeploymentConfig | None = None,
    *,
    restart_policy: str | None = None,
    step_timeout: int = STEP_TIMEOUT,
) -> ConvergencePlan:
    """Build the convergence plan for a deployment.

    The plan does not depend on the config apart from the optional overrides;
    the image and port mapping are fixed.

    :param restart_policy: Docker restart policy (default: none, as at first boot)
    :param step_timeout: Per-step timeout in seconds
    :raises ValueError: If the restart policy or timeout is invalid
    """
    if restart_policy is not None and not RESTART_POLICY_PATTERN.match(restart_policy):
        raise ValueError(
            f"Invalid restart policy '{restart_policy}' "
            "(expected no, always, unless-stopped, on-failure[:N])"
        )
    if step_timeout <= 0:
        raise ValueError(f"Step timeout must be positive, got {step_timeout}")
    return ConvergencePlan(restart_policy=restart_policy, step_timeout=step_timeout)


def build_steps(plan: ConvergencePlan) -> list[ConvergenceStep]:
    """Return the four convergence steps in execution order.

    Every step is safe to re-run. The container launch replaces any existing
    container with the same name, so a second run never hits a port conflict.
    """
    restart = f" --restart {plan.restart_policy}" if plan.restart_policy else ""
    commands = [
        (
            "install-runtime",
            "export DEBIAN_FRONTEND=noninteractive && apt-get update "
            f"&& apt-get install -y {plan.runtime_package}",
        ),
        ("start-runtime", f"systemctl enable --now {plan.runtime_service}"),
        (
            "grant-runtime-group",
            f"usermod -aG {plan.runtime_group} {plan.admin_user}",
        ),
        (
            "launch-container",
            f"docker rm -f {plan.container_name} >/dev/null 2>&1 || true; "
            f"docker run -d --name {plan.container_name} "
            f"-p {plan.host_port}:{plan.container_port}{restart} {plan.image}",
        ),
    ]
    return [
        ConvergenceStep(number=i, name=name, command=command, timeout=plan.step_timeout)
        for i, (name, command) in enumerate(commands, start=1)
    ]


def render_user_data(plan: ConvergencePlan) -> str:
    """Render the steps as a cloud-init user-data script.

    The script stops at the first failing step and leaves earlier steps in
    place. Its last log line is ``converged``, ``failed-at-step-N`` or
    ``timed-out-at-step-N``.
    """
    header = dedent(f"""
        #!/bin/bash
        # dockervm first-boot convergence
        set -uo pipefail
        exec > >(tee -a {CONVERGE_LOG}) 2>&1

        run_step() {{
            local number="$1" name="$2" command="$3"
            echo "dockervm: step $number: $name"
            timeout {plan.step_timeout} bash -c "$command"
            local rc=$?
            if [ "$rc" -eq {TIMEOUT_EXIT_CODE} ]; then
                echo "dockervm: timed-out-at-step-$number"
                exit "$rc"
            elif [ "$rc" -ne 0 ]; then
                echo "dockervm: failed-at-step-$number (exit $rc)"
                exit "$rc"
            fi
        }}
    """).strip()

    lines = [header, ""]
    for step in build_steps(plan):
        lines.append(f"run_step {step.number} {step.name} {shell_quote(step.command)}")
    lines.append('echo "dockervm: converged"')
    return "\n".join(lines) + "\n"


def converge(runner: Runner, steps: list[ConvergenceStep]) -> ConvergenceResult:
    """Run convergence steps in order, stopping at the first failure.

    No step is retried and nothing is rolled back.

    :param runner: Executes each step's command
    :param steps: Steps from :func:`build_steps`
    :return: Result in the ``converged`` state
    :raises ConvergenceError: On the first failing or timed-out step
    """
    result = ConvergenceResult()
    for step in steps:
        log(f"Step {step.number}/{len(steps)}: {step.name}")
        try:
            code, output = runner.run(step.command, timeout=step.timeout)
        except StepTimeout as e:
            raise ConvergenceError(step.number, step.name, "timed-out", str(e)) from e
        if code != 0:
            raise ConvergenceError(
                step.number, step.name, "failed", output or f"exit status {code}"
            )
        result.completed.append(step.name)
    log("Converged")
    return result
