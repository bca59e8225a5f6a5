"""EIP-712 typed data for payment attestations.

The PaymentVerifier contract re-derives the digest from the struct and its
own domain, so the encoding here has to match it byte for byte.
`compute_digest` builds it by hand from the type hashes; `sign_attestation`
goes through eth_account's typed-data encoder and refuses to sign when the
two disagree.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import encode
from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import keccak, to_checksum_address

DOMAIN_NAME = "WisePaymentVerifier"
DOMAIN_VERSION = "1"

EIP712_DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
PAYMENT_ATTESTATION_TYPE = (
    "PaymentAttestation(bytes32 intentHash,uint256 amount,uint256 timestamp,"
    "string paymentId,bytes32 dataHash)"
)
EIP712_DOMAIN_TYPEHASH = keccak(text=EIP712_DOMAIN_TYPE)
PAYMENT_ATTESTATION_TYPEHASH = keccak(text=PAYMENT_ATTESTATION_TYPE)

TYPES: dict[str, list[dict[str, str]]] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "PaymentAttestation": [
        {"name": "intentHash", "type": "bytes32"},
        {"name": "amount", "type": "uint256"},
        {"name": "timestamp", "type": "uint256"},
        {"name": "paymentId", "type": "string"},
        {"name": "dataHash", "type": "bytes32"},
    ],
}


def _hex_to_bytes32(value: bytes | str) -> bytes:
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(value) != 32:
        raise ValueError(f"expected 32 bytes, got {len(value)}")
    return bytes(value)


@dataclass(frozen=True)
class Eip712Domain:
    """Signing domain of the PaymentVerifier contract."""

    chain_id: int
    verifying_contract: str
    name: str = DOMAIN_NAME
    version: str = DOMAIN_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": to_checksum_address(self.verifying_contract),
        }


@dataclass(frozen=True)
class PaymentAttestation:
    """Struct consumed by `fulfillIntentWithProof`."""

    intent_hash: bytes
    amount: int
    timestamp: int
    payment_id: str
    data_hash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "intent_hash", _hex_to_bytes32(self.intent_hash))
        object.__setattr__(self, "data_hash", _hex_to_bytes32(self.data_hash))
        if self.amount < 0 or self.timestamp < 0:
            raise ValueError("amount and timestamp must be non-negative")

    def to_message(self) -> dict[str, Any]:
        return {
            "intentHash": self.intent_hash,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "paymentId": self.payment_id,
            "dataHash": self.data_hash,
        }

    def as_tuple(self) -> tuple:
        """ABI tuple order for contract calls."""
        return (self.intent_hash, self.amount, self.timestamp, self.payment_id, self.data_hash)

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_hash": "0x" + self.intent_hash.hex(),
            "amount": self.amount,
            "timestamp": self.timestamp,
            "payment_id": self.payment_id,
            "data_hash": "0x" + self.data_hash.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentAttestation":
        return cls(
            intent_hash=data["intent_hash"],
            amount=int(data["amount"]),
            timestamp=int(data["timestamp"]),
            payment_id=str(data["payment_id"]),
            data_hash=data["data_hash"],
        )


def domain_separator(domain: Eip712Domain) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                EIP712_DOMAIN_TYPEHASH,
                keccak(text=domain.name),
                keccak(text=domain.version),
                domain.chain_id,
                to_checksum_address(domain.verifying_contract),
            ],
        )
    )


def struct_hash(attestation: PaymentAttestation) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "uint256", "uint256", "bytes32", "bytes32"],
            [
                PAYMENT_ATTESTATION_TYPEHASH,
                attestation.intent_hash,
                attestation.amount,
                attestation.timestamp,
                keccak(text=attestation.payment_id),
                attestation.data_hash,
            ],
        )
    )


def compute_digest(domain: Eip712Domain, attestation: PaymentAttestation) -> bytes:
    """keccak256(0x1901 || domainSeparator || structHash), as the contract computes it."""
    return keccak(b"\x19\x01" + domain_separator(domain) + struct_hash(attestation))


def typed_data(domain: Eip712Domain, attestation: PaymentAttestation) -> dict[str, Any]:
    return {
        "types": TYPES,
        "primaryType": "PaymentAttestation",
        "domain": domain.to_dict(),
        "message": attestation.to_message(),
    }


def signable_message(domain: Eip712Domain, attestation: PaymentAttestation) -> SignableMessage:
    return encode_typed_data(full_message=typed_data(domain, attestation))


def message_digest(message: SignableMessage) -> bytes:
    return keccak(b"\x19" + message.version + message.header + message.body)


def sign_attestation(account: Any, domain: Eip712Domain, attestation: PaymentAttestation) -> tuple[bytes, bytes]:
    """Sign with a local account.

    Returns:
        (65-byte r||s||v signature with v in {27, 28}, digest)
    """
    message = signable_message(domain, attestation)
    digest = message_digest(message)
    expected = compute_digest(domain, attestation)
    if digest != expected:
        raise ValueError("typed-data encoder disagrees with the contract digest")
    signed = account.sign_message(message)
    return bytes(signed.signature), digest


def recover_signer(domain: Eip712Domain, attestation: PaymentAttestation, signature: bytes) -> str:
    """Address that produced `signature` over the attestation."""
    return Account.recover_message(signable_message(domain, attestation), signature=signature)
