"""Data layer - on-chain models and storage."""

from offramp_solver.data.models import (
    ChainIntentStatus,
    Currency,
    IntentCreated,
    OnChainIntent,
    OnChainQuote,
    QuoteSelected,
    Route,
    WindowConstants,
    normalize_intent_id,
)
from offramp_solver.data.storage import get_session, init_db

__all__ = [
    "Currency",
    "Route",
    "ChainIntentStatus",
    "IntentCreated",
    "QuoteSelected",
    "OnChainIntent",
    "OnChainQuote",
    "WindowConstants",
    "normalize_intent_id",
    "init_db",
    "get_session",
]
