"""Tests for the proof toolchain wrapper."""

import asyncio

import pytest

from offramp_solver.execution.errors import ProofCaptureFailed, ProofTimeout
from offramp_solver.execution.prover import ProofRequest, ProofToolchain

from tests.conftest import intent_id

WRITE_PRESENTATION = "sh -c 'printf \"proof-for-%s\" \"$QONTO_TRANSFER_ID\" > out.tlsn'"


def _toolchain(tmp_path, commit="true", present=WRITE_PRESENTATION, timeout=10.0):
    workdir = tmp_path / "prover"
    workdir.mkdir(exist_ok=True)
    return ProofToolchain(
        commit_command=commit,
        present_command=present,
        workdir=str(workdir),
        output_file="out.tlsn",
        storage_path=str(tmp_path / "proofs"),
        timeout_seconds=timeout,
    )


def _capture(toolchain, transfer_id="tr_1"):
    return asyncio.run(toolchain.capture(ProofRequest(intent_id=intent_id(1), transfer_id=transfer_id)))


def test_capture_stores_presentation(tmp_path):
    """Test both phases run and the output is stored per transfer."""
    artifact = _capture(_toolchain(tmp_path))

    assert artifact.data == b"proof-for-tr_1"
    assert artifact.path == tmp_path / "proofs" / "tr_1.presentation.tlsn"
    assert artifact.path.read_bytes() == b"proof-for-tr_1"
    assert not artifact.reused


def test_capture_reuses_stored_presentation(tmp_path):
    """Test a second capture for the same transfer skips the toolchain."""
    toolchain = _toolchain(tmp_path)
    _capture(toolchain)

    toolchain.commit_argv = ["false"]
    artifact = _capture(toolchain)
    assert artifact.reused
    assert artifact.data == b"proof-for-tr_1"


def test_discard_forces_new_capture(tmp_path):
    toolchain = _toolchain(tmp_path)
    _capture(toolchain)
    toolchain.discard("tr_1")

    assert toolchain.existing("tr_1") is None
    assert not _capture(toolchain).reused


def test_commit_failure_reports_exit_code(tmp_path):
    toolchain = _toolchain(tmp_path, commit="sh -c 'echo bad credentials >&2; exit 3'")
    with pytest.raises(ProofCaptureFailed) as exc:
        _capture(toolchain)

    assert exc.value.exit_code == 3
    assert exc.value.phase == "commit"
    assert "bad credentials" in str(exc.value)
    assert not isinstance(exc.value, ProofTimeout)


def test_phase_timeout_kills_process(tmp_path):
    """Test a hung phase raises ProofTimeout."""
    toolchain = _toolchain(tmp_path, commit="sleep 5", timeout=0.5)
    with pytest.raises(ProofTimeout) as exc:
        _capture(toolchain)
    assert exc.value.phase == "commit"


def test_missing_output_fails(tmp_path):
    with pytest.raises(ProofCaptureFailed) as exc:
        _capture(_toolchain(tmp_path, present="true"))
    assert exc.value.phase == "present"


def test_stale_output_is_not_reused(tmp_path):
    """Test a presentation left in the workdir by another run is ignored."""
    toolchain = _toolchain(tmp_path, present="true")
    (tmp_path / "prover" / "out.tlsn").write_bytes(b"proof-for-tr_0")

    with pytest.raises(ProofCaptureFailed):
        _capture(toolchain)


def test_missing_binary_fails(tmp_path):
    with pytest.raises(ProofCaptureFailed) as exc:
        _capture(_toolchain(tmp_path, commit="/nonexistent/prover-binary"))
    assert exc.value.phase == "commit"
