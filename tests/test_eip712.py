"""Tests for EIP-712 payment attestation encoding."""

import pytest
from eth_account import Account
from eth_utils import keccak

from offramp_solver.attestation.eip712 import (
    DOMAIN_NAME,
    DOMAIN_VERSION,
    PAYMENT_ATTESTATION_TYPE,
    Eip712Domain,
    PaymentAttestation,
    compute_digest,
    message_digest,
    recover_signer,
    sign_attestation,
    signable_message,
)

from tests.conftest import CHAIN_ID, DOMAIN, VERIFIER_ADDRESS, WITNESS_ADDRESS, WITNESS_KEY, intent_id


def _attestation(**overrides) -> PaymentAttestation:
    fields = {
        "intent_hash": intent_id(1),
        "amount": 9200,
        "timestamp": 1_733_000_000,
        "payment_id": "txn_abc",
        "data_hash": keccak(text="body"),
    }
    fields.update(overrides)
    return PaymentAttestation(**fields)


def test_domain_constants():
    assert DOMAIN_NAME == "WisePaymentVerifier"
    assert DOMAIN_VERSION == "1"
    assert DOMAIN.to_dict()["chainId"] == CHAIN_ID


def test_typed_data_encoder_matches_manual_digest():
    """Test eth_account's encoder and the hand-built digest agree."""
    attestation = _attestation()
    assert message_digest(signable_message(DOMAIN, attestation)) == compute_digest(DOMAIN, attestation)


def test_sign_and_recover():
    """Test the signature recovers to the witness address."""
    attestation = _attestation()
    signature, digest = sign_attestation(Account.from_key(WITNESS_KEY), DOMAIN, attestation)

    assert len(signature) == 65
    assert signature[-1] in (27, 28)
    assert digest == compute_digest(DOMAIN, attestation)
    assert recover_signer(DOMAIN, attestation, signature) == WITNESS_ADDRESS


def test_digest_binds_domain_and_fields():
    """Test any change to the domain or struct changes the digest."""
    attestation = _attestation()
    base = compute_digest(DOMAIN, attestation)

    other_chain = Eip712Domain(chain_id=8453, verifying_contract=VERIFIER_ADDRESS)
    assert compute_digest(other_chain, attestation) != base
    assert compute_digest(DOMAIN, _attestation(amount=9201)) != base
    assert compute_digest(DOMAIN, _attestation(payment_id="txn_abd")) != base
    assert compute_digest(DOMAIN, _attestation(intent_hash=intent_id(2))) != base


def test_type_string_field_order():
    assert PAYMENT_ATTESTATION_TYPE == (
        "PaymentAttestation(bytes32 intentHash,uint256 amount,uint256 timestamp,"
        "string paymentId,bytes32 dataHash)"
    )


def test_attestation_round_trips_through_dict():
    attestation = _attestation()
    assert PaymentAttestation.from_dict(attestation.to_dict()) == attestation
    assert attestation.as_tuple()[3] == "txn_abc"


def test_attestation_rejects_short_hash():
    with pytest.raises(ValueError):
        _attestation(intent_hash=b"\x01" * 31)
