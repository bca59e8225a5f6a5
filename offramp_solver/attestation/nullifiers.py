"""Single-use payment nullifiers.

nullifier = keccak256(payment_id). The PaymentVerifier contract stores
consumed nullifiers and is the final arbiter; the checks here only fail
fast before signing.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Protocol

from eth_utils import keccak
from web3 import Web3

logger = logging.getLogger(__name__)

PAYMENT_VERIFIER_ABI = [
    {
        "type": "function",
        "name": "usedNullifiers",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "authorizedWitnesses",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "DOMAIN_SEPARATOR",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
]


def compute_nullifier(payment_id: str) -> bytes:
    return keccak(text=payment_id)


class NullifierRegistry(Protocol):
    def is_used(self, nullifier: bytes) -> bool:
        ...


class LocalNullifierCache:
    """Bounded in-memory set of nullifiers known to be consumed.

    Only ever holds nullifiers observed as used (on-chain or by a settled
    claim), never ones we merely signed, so re-attesting the same proof before
    it is claimed stays possible.
    """

    def __init__(self, max_size: int = 100_000) -> None:
        self.max_size = max_size
        self._seen: OrderedDict[bytes, None] = OrderedDict()

    def add(self, nullifier: bytes) -> None:
        self._seen[nullifier] = None
        self._seen.move_to_end(nullifier)
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)

    def is_used(self, nullifier: bytes) -> bool:
        return nullifier in self._seen

    def __len__(self) -> int:
        return len(self._seen)


class OnChainNullifierRegistry:
    """Reads `usedNullifiers(bytes32)` from the PaymentVerifier contract."""

    def __init__(self, w3: Web3, verifier_address: str) -> None:
        self.contract = w3.eth.contract(
            address=Web3.to_checksum_address(verifier_address), abi=PAYMENT_VERIFIER_ABI
        )

    def is_used(self, nullifier: bytes) -> bool:
        return bool(self.contract.functions.usedNullifiers(nullifier).call())

    def is_witness_authorized(self, witness: str) -> bool:
        return bool(
            self.contract.functions.authorizedWitnesses(Web3.to_checksum_address(witness)).call()
        )


class CompositeNullifierRegistry:
    """Local cache in front of an authoritative registry."""

    def __init__(self, cache: LocalNullifierCache, authority: NullifierRegistry | None = None) -> None:
        self.cache = cache
        self.authority = authority

    def is_used(self, nullifier: bytes) -> bool:
        if self.cache.is_used(nullifier):
            return True
        if self.authority is not None and self.authority.is_used(nullifier):
            self.cache.add(nullifier)
            return True
        return False
