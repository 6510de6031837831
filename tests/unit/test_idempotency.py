"""
Tests for idempotency key generation.
"""
import hashlib

from tradeguard.execution.idempotency import (
    CANCEL_BUCKET_MS,
    SUBMIT_BUCKET_MS,
    cancel_key,
    generate_idempotency_key,
    submit_key,
)

T0 = 1_767_625_200_000  # 2026-01-05 15:00 UTC, a bucket boundary for both windows


def test_key_is_truncated_sha256_of_fields():
    bucket = T0 // SUBMIT_BUCKET_MS
    expected = hashlib.sha256(f"autonomous:AAPL:buy::{bucket}".encode()).hexdigest()[:32]
    assert generate_idempotency_key("autonomous", "AAPL", "buy", T0) == expected


def test_same_bucket_same_key():
    assert submit_key("s1", "AAPL", "buy", T0) == submit_key("s1", "AAPL", "buy", T0 + SUBMIT_BUCKET_MS - 1)


def test_next_bucket_new_key():
    assert submit_key("s1", "AAPL", "buy", T0) != submit_key("s1", "AAPL", "buy", T0 + SUBMIT_BUCKET_MS)


def test_signal_hash_and_side_discriminate():
    base = submit_key("s1", "AAPL", "buy", T0)
    assert submit_key("s1", "AAPL", "sell", T0) != base
    assert submit_key("s1", "AAPL", "buy", T0, signal_hash="close-50-5") != base


def test_cancel_key_depends_on_order_id_and_minute():
    first = cancel_key("s1", "AAPL", "order-1", T0)
    assert cancel_key("s1", "AAPL", "order-2", T0) != first
    assert cancel_key("s1", "AAPL", "order-1", T0 + CANCEL_BUCKET_MS) != first
    assert len(first) == 32
