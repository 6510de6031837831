"""
Idempotency keys for queued broker operations.

The same (strategy, symbol, side, signal) within one time bucket always maps
to the same key, so duplicate intents collapse into a single work item.
"""
import hashlib
from typing import Optional

SUBMIT_BUCKET_MS = 5 * 60 * 1000
CANCEL_BUCKET_MS = 60 * 1000
KEY_LENGTH = 32


def time_bucket(timestamp_ms: int, bucket_ms: int) -> int:
    return timestamp_ms // bucket_ms


def generate_idempotency_key(
    strategy_id: str,
    symbol: str,
    side: str,
    timestamp_ms: int,
    signal_hash: Optional[str] = None,
    bucket_ms: int = SUBMIT_BUCKET_MS,
) -> str:
    """
    Deterministic key: sha256("strategy:symbol:side:signal:bucket")[:32].

    Args:
        strategy_id: Originating strategy (``autonomous`` for the engine itself)
        symbol: Instrument
        side: ``buy``/``sell``, or ``cancel-<order_id>`` for cancellations
        timestamp_ms: Request time in epoch milliseconds
        signal_hash: Optional discriminator for distinct signals in one bucket
        bucket_ms: Window width
    """
    bucket = time_bucket(timestamp_ms, bucket_ms)
    raw = f"{strategy_id}:{symbol}:{side}:{signal_hash or ''}:{bucket}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:KEY_LENGTH]


def submit_key(
    strategy_id: str,
    symbol: str,
    side: str,
    timestamp_ms: int,
    signal_hash: Optional[str] = None,
    bucket_ms: int = SUBMIT_BUCKET_MS,
) -> str:
    return generate_idempotency_key(strategy_id, symbol, side, timestamp_ms, signal_hash, bucket_ms)


def cancel_key(
    strategy_id: str,
    symbol: str,
    order_id: str,
    timestamp_ms: int,
    bucket_ms: int = CANCEL_BUCKET_MS,
) -> str:
    return generate_idempotency_key(strategy_id, symbol, f"cancel-{order_id}", timestamp_ms, None, bucket_ms)
