"""Proof capture through the external TLS proof toolchain.

Two phases run as subprocesses: the commit phase records an MPC-TLS session
against the bank's transfer endpoint, the disclosure phase turns it into a
presentation file. The presentation is kept under the proof storage path,
named after the transfer id, so a resumed pipeline reuses it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from offramp_solver.execution.errors import ProofCaptureFailed, ProofTimeout

logger = logging.getLogger(__name__)

PRESENTATION_SUFFIX = ".presentation.tlsn"


@dataclass(frozen=True)
class ProofRequest:
    intent_id: str
    transfer_id: str


@dataclass(frozen=True)
class ProofArtifact:
    """A captured presentation."""

    transfer_id: str
    path: Path
    data: bytes
    reused: bool = False
    duration: float = 0.0


class ProofToolchain:
    """Runs the commit and disclosure phases with a shared time budget."""

    def __init__(
        self,
        commit_command: str,
        present_command: str,
        workdir: str,
        output_file: str,
        storage_path: str,
        timeout_seconds: float = 180.0,
        commit_share: float = 0.6,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize toolchain wrapper.

        Args:
            commit_command: Commit phase command line.
            present_command: Disclosure phase command line.
            workdir: Working directory both phases run in.
            output_file: Presentation written by the disclosure phase, relative to workdir.
            storage_path: Directory captured presentations are copied to.
            timeout_seconds: Budget for both phases together.
            commit_share: Fraction of the budget given to the commit phase.
            env: Extra environment (bank API credentials for the commit phase).
        """
        self.commit_argv = shlex.split(commit_command)
        self.present_argv = shlex.split(present_command)
        self.workdir = Path(workdir)
        self.output_file = output_file
        self.storage_path = Path(storage_path)
        self.timeout_seconds = timeout_seconds
        self.commit_share = commit_share
        self.env = dict(env or {})

    def stored_path(self, transfer_id: str) -> Path:
        safe_id = transfer_id.replace("/", "_")
        return self.storage_path / f"{safe_id}{PRESENTATION_SUFFIX}"

    def existing(self, transfer_id: str) -> ProofArtifact | None:
        """A previously captured presentation for this transfer, if any."""
        path = self.stored_path(transfer_id)
        if path.is_file() and path.stat().st_size > 0:
            return ProofArtifact(transfer_id=transfer_id, path=path, data=path.read_bytes(), reused=True)
        return None

    def discard(self, transfer_id: str) -> None:
        """Remove a stored presentation so the next capture starts fresh."""
        self.stored_path(transfer_id).unlink(missing_ok=True)

    async def capture(self, request: ProofRequest) -> ProofArtifact:
        """Capture (or reuse) the presentation for `request.transfer_id`.

        Raises:
            ProofTimeout: A phase exceeded its share of the budget.
            ProofCaptureFailed: A phase failed or no presentation was written.
        """
        reused = self.existing(request.transfer_id)
        if reused is not None:
            logger.info(
                "Reusing stored presentation",
                extra={"intent_id": request.intent_id, "transfer_id": request.transfer_id},
            )
            return reused

        started = time.monotonic()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        produced = self.workdir / self.output_file
        # A presentation left over from another transfer must never be picked up.
        produced.unlink(missing_ok=True)
        env = {**os.environ, **self.env, "QONTO_TRANSFER_ID": request.transfer_id}
        commit_budget = self.timeout_seconds * self.commit_share

        logger.info(
            "Proof capture 1/2: commit phase",
            extra={"intent_id": request.intent_id, "transfer_id": request.transfer_id},
        )
        await self._run_phase("commit", self.commit_argv, env, commit_budget, request.intent_id)

        remaining = self.timeout_seconds - (time.monotonic() - started)
        if remaining <= 0:
            raise ProofTimeout(
                "Proof budget exhausted after commit phase",
                phase="present",
                intent_id=request.intent_id,
            )
        logger.info(
            "Proof capture 2/2: disclosure phase",
            extra={"intent_id": request.intent_id, "transfer_id": request.transfer_id},
        )
        await self._run_phase("present", self.present_argv, env, remaining, request.intent_id)

        if not produced.is_file() or produced.stat().st_size == 0:
            raise ProofCaptureFailed(
                f"Prover finished but {produced} is missing or empty",
                phase="present",
                intent_id=request.intent_id,
            )
        stored = self.stored_path(request.transfer_id)
        shutil.copyfile(produced, stored)
        data = stored.read_bytes()

        duration = time.monotonic() - started
        logger.info(
            "Proof captured",
            extra={
                "intent_id": request.intent_id,
                "transfer_id": request.transfer_id,
                "size": len(data),
                "duration": duration,
            },
        )
        return ProofArtifact(
            transfer_id=request.transfer_id, path=stored, data=data, duration=duration
        )

    async def _run_phase(
        self, phase: str, argv: list[str], env: dict[str, str], timeout: float, intent_id: str
    ) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProofCaptureFailed(
                f"Failed to start {phase} phase: {e}", phase=phase, intent_id=intent_id
            ) from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProofTimeout(
                f"Proof {phase} phase timed out after {timeout:.0f}s",
                phase=phase,
                intent_id=intent_id,
            ) from None

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-500:]
            raise ProofCaptureFailed(
                f"Proof {phase} phase exited with code {process.returncode}: {tail}",
                exit_code=process.returncode,
                phase=phase,
                intent_id=intent_id,
            )
