"""Proof artifact decoding and authenticity verification.

The cryptography lives in the proof toolchain. `ToolchainPresentationVerifier`
shells out to its verification command, which reads the artifact on stdin and
prints the verified session as JSON:

    {"server_name": "thirdparty.qonto.com", "time": 1733000000,
     "received": "<base64>", "sent": "<base64>"}

Exit status 2 means the artifact could not be deserialized; any other
non-zero status means it did not verify.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Protocol, Sequence

from offramp_solver.attestation.errors import (
    AttestationUnavailable,
    IncompletePayload,
    MalformedProof,
    UntrustedServer,
)

logger = logging.getLogger(__name__)

EXIT_DESERIALIZE = 2


@dataclass(frozen=True)
class VerifiedPresentation:
    """Output of a successful authenticity check."""

    server_name: str | None
    timestamp: int
    received: bytes
    sent: bytes = b""


class PresentationVerifier(Protocol):
    def verify(self, artifact: bytes) -> VerifiedPresentation:
        """Verify `artifact` or raise MalformedProof / UntrustedServer."""
        ...


def decode_artifact(artifact: bytes | str, max_bytes: int = 2_000_000) -> bytes:
    """Turn the wire form (base64 text or raw bytes) into artifact bytes."""
    if isinstance(artifact, str):
        try:
            raw = base64.b64decode(artifact.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedProof(f"Invalid presentation: not base64 ({e})") from e
    else:
        raw = bytes(artifact)
    if not raw:
        raise MalformedProof("Invalid presentation: empty artifact")
    if len(raw) > max_bytes:
        raise MalformedProof(f"Invalid presentation: {len(raw)} bytes exceeds {max_bytes}")
    return raw


def check_server_allowed(server_name: str | None, allowed_servers: Sequence[str]) -> str:
    """The proven server must be an allowed name or a subdomain of one."""
    if not server_name:
        raise UntrustedServer("Server not found in presentation")
    name = server_name.lower().rstrip(".")
    if not any(name == allowed or name.endswith("." + allowed) for allowed in allowed_servers):
        raise UntrustedServer(
            f"Unexpected server: expected one of {', '.join(allowed_servers)}, got {server_name}"
        )
    return server_name


class ToolchainPresentationVerifier:
    """Runs the proof toolchain's verification primitive as a subprocess."""

    def __init__(self, command: str | Sequence[str], timeout: float = 30.0) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout = timeout

    def verify(self, artifact: bytes) -> VerifiedPresentation:
        try:
            proc = subprocess.run(
                self.command,
                input=artifact,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise AttestationUnavailable(
                f"Presentation verification timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise AttestationUnavailable(f"Verification command failed to start: {e}") from e

        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode == EXIT_DESERIALIZE:
            raise MalformedProof(f"Deserialization error: {stderr or 'invalid presentation'}")
        if proc.returncode != 0:
            raise UntrustedServer(
                f"Verification failed: {stderr or f'exit code {proc.returncode}'}",
                original_error=stderr or None,
            )

        try:
            out = json.loads(proc.stdout)
            received = base64.b64decode(out.get("received") or "")
            sent = base64.b64decode(out.get("sent") or "")
            timestamp = int(out.get("time") or 0)
        except (ValueError, TypeError, binascii.Error) as e:
            raise MalformedProof(f"Deserialization error: verifier output unreadable ({e})") from e

        if not received:
            raise IncompletePayload("Missing required field: transcript not found in presentation")

        logger.debug(
            "Presentation verified",
            extra={"server_name": out.get("server_name"), "time": timestamp},
        )
        return VerifiedPresentation(
            server_name=out.get("server_name"),
            timestamp=timestamp,
            received=received,
            sent=sent,
        )
