"""dockervm - provision an EC2 host that runs NGINX in Docker."""

from .bootstrap import (
    ConvergenceError,
    ConvergencePlan,
    ConvergenceResult,
    ConvergenceStep,
    LocalRunner,
    Runner,
    StepTimeout,
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
    parse_public_key,
    resolve_config,
    resolve_scope,
)
from .types import DeploymentOutputs, RawParameters

__all__ = [
    "ConfigError",
    "ConvergenceError",
    "ConvergencePlan",
    "ConvergenceResult",
    "ConvergenceStep",
    "DeploymentConfig",
    "DeploymentOutputs",
    "DeploymentScope",
    "LocalRunner",
    "RawParameters",
    "Runner",
    "StepTimeout",
    "build_steps",
    "collect_parameters",
    "converge",
    "parse_public_key",
    "plan_for",
    "render_user_data",
    "resolve_config",
    "resolve_scope",
]
