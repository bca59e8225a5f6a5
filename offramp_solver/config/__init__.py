"""Configuration management."""

from offramp_solver.config.env_loader import (
    ATTESTOR_REQUIRED_VARS,
    SOLVER_READONLY_VARS,
    SOLVER_REQUIRED_VARS,
    EnvStatus,
    load_env_or_exit,
)
from offramp_solver.config.settings import (
    AttestorSettings,
    Settings,
    get_attestor_settings,
    get_settings,
)

__all__ = [
    "Settings",
    "AttestorSettings",
    "get_settings",
    "get_attestor_settings",
    "EnvStatus",
    "load_env_or_exit",
    "SOLVER_REQUIRED_VARS",
    "SOLVER_READONLY_VARS",
    "ATTESTOR_REQUIRED_VARS",
]
