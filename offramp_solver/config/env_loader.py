"""Environment loading and validation.

Goals:
- Load `.env` at process start when present.
- Fail fast with clear guidance if a required variable is missing.
- Never print secrets.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Sequence

from dotenv import load_dotenv


@dataclass(frozen=True)
class EnvStatus:
    env_path: str
    loaded: bool
    missing: tuple[str, ...] = ()


SOLVER_REQUIRED_VARS = [
    "OFFRAMP_RPC_URL",
    "OFFRAMP_OFFRAMP_ADDRESS",
    "OFFRAMP_SOLVER_PRIVATE_KEY",
]

# Read-only commands (stats, intents) only need the database.
SOLVER_READONLY_VARS = [
    "OFFRAMP_RPC_URL",
    "OFFRAMP_OFFRAMP_ADDRESS",
]

ATTESTOR_REQUIRED_VARS = [
    "ATTESTOR_WITNESS_PRIVATE_KEY",
    "ATTESTOR_VERIFIER_CONTRACT",
]

# If any of these is set, all must be.
QONTO_AUTH_VARS = [
    "OFFRAMP_QONTO_API_LOGIN",
    "OFFRAMP_QONTO_API_SECRET",
    "OFFRAMP_QONTO_BANK_ACCOUNT_ID",
]


def load_env_or_exit(
    required: Sequence[str] = SOLVER_REQUIRED_VARS, env_path: str = ".env"
) -> EnvStatus:
    """Load `.env` (if any) and validate required keys exist.

    A missing `.env` is fine as long as the process environment already
    carries the required variables (containers, systemd units).
    """
    loaded = False
    if os.path.exists(env_path):
        loaded = load_dotenv(dotenv_path=env_path, override=False)

    missing = [k for k in required if not os.environ.get(k)]
    if missing:
        _print_env_incomplete(missing, env_path=env_path, env_exists=os.path.exists(env_path))
        raise SystemExit(2)

    present = [k for k in QONTO_AUTH_VARS if os.environ.get(k)]
    if present and len(present) != len(QONTO_AUTH_VARS):
        _print_partial_group(QONTO_AUTH_VARS, env_path=env_path)
        raise SystemExit(2)

    return EnvStatus(env_path=env_path, loaded=loaded)


def _print_env_incomplete(missing: list[str], *, env_path: str, env_exists: bool) -> None:
    sys.stderr.write("\nERROR: required configuration is missing.\n")
    if env_exists:
        sys.stderr.write(f"File: {env_path}\n")
    else:
        sys.stderr.write(f"No {env_path} found and the environment does not define:\n")
    sys.stderr.write("Missing:\n")
    for k in missing:
        sys.stderr.write(f"  - {k}\n")
    sys.stderr.write("\nFix: export the variables or add them to your .env.\n\n")


def _print_partial_group(group: list[str], *, env_path: str) -> None:
    sys.stderr.write("\nERROR: partial Qonto credentials detected.\n")
    sys.stderr.write(f"File: {env_path}\n")
    sys.stderr.write("If you set any of these, you must set all of them:\n")
    for k in group:
        sys.stderr.write(f"  - {k}\n")
    sys.stderr.write("\n")
