"""Payment facts from a verified bank API transcript."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from offramp_solver.attestation.errors import IncompletePayload

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class PaymentFacts:
    """Fields disclosed in the transcript; any of them may be missing."""

    transaction_id: str | None
    amount_cents: int | None
    beneficiary: str | None
    status: str | None
    body: str


def normalize_reference(value: str) -> str:
    """Canonical form for IBANs and similar routing strings."""
    return _WHITESPACE.sub("", value).upper()


def extract_body(received: bytes | str) -> str:
    """JSON body of the HTTP response in `received`.

    The body starts after the first blank line; the JSON runs from the first
    `{` to the last `}`. Selectively disclosed bytes outside that span are
    ignored.
    """
    text = received.decode("utf-8", errors="replace") if isinstance(received, bytes) else received
    splits = [(idx, len(sep)) for sep in ("\r\n\r\n", "\n\n") if (idx := text.find(sep)) >= 0]
    if not splits:
        raise IncompletePayload("Missing required field: response body not found in transcript")
    idx, width = min(splits)
    body = text[idx + width:]

    start = body.find("{")
    end = body.rfind("}")
    if start < 0 or end < start:
        raise IncompletePayload("Missing required field: no JSON object in response body")
    return body[start:end + 1]


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _as_cents(value: Any, *, decimal_units: bool) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if decimal_units:
        amount = amount * 100
    cents = int(amount.quantize(Decimal(1), rounding=ROUND_DOWN))
    return cents or None


def parse_payment(body: str) -> PaymentFacts:
    """Pull transaction id, amount, beneficiary and status out of a body.

    Accepts `{"transaction": {...}}`, `{"transactions": [{...}, ...]}` and
    `{"transfer": {...}}` shapes.
    """
    try:
        value = json.loads(body)
    except ValueError as e:
        raise IncompletePayload(f"Missing required field: response body is not JSON ({e})") from e

    tx = None
    if isinstance(value, dict):
        tx = value.get("transaction")
        if tx is None and isinstance(value.get("transactions"), list) and value["transactions"]:
            tx = value["transactions"][0]
        if tx is None:
            tx = value.get("transfer")
    if not isinstance(tx, dict):
        return PaymentFacts(None, None, None, None, body)

    transaction_id = tx.get("id")
    if transaction_id is not None:
        transaction_id = str(transaction_id)

    amount_cents = _as_cents(tx.get("amount_cents"), decimal_units=False)
    if amount_cents is None:
        amount_cents = _as_cents(tx.get("local_amount_cents"), decimal_units=False)
    if amount_cents is None:
        amount_cents = _as_cents(tx.get("amount"), decimal_units=True)

    beneficiary = None
    for path in (
        ("transfer", "counterparty_account_number"),
        ("counterparty", "iban"),
        ("counterparty", "account_number"),
        ("beneficiary", "iban"),
        ("beneficiary_iban",),
    ):
        candidate = _get(tx, *path)
        if isinstance(candidate, str) and candidate:
            beneficiary = candidate
            break

    status = tx.get("status") or tx.get("operation_type")
    return PaymentFacts(
        transaction_id=transaction_id,
        amount_cents=amount_cents,
        beneficiary=beneficiary,
        status=str(status) if status is not None else None,
        body=body,
    )
