"""
Tests for the Alpaca REST client against a fake aiohttp session.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import aiohttp
import pytest

from tradeguard.data.alpaca_client import (
    AlpacaClient,
    _error_message,
    _is_transient,
    _parse_ts,
    parse_order,
    parse_position,
    parse_snapshot,
)
from tradeguard.exceptions import BrokerAPIError, OrderNotFoundError, RateLimitError
from tradeguard.utils import retry


class FakeResponse:
    def __init__(self, status, body=None, error=None):
        self.status = status
        self._body = body
        self._error = error

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self):
        return self._body

    async def text(self):
        return self._body if isinstance(self._body, str) else json.dumps(self._body)


class FakeSession:
    closed = False

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json})
        return self.responses.pop(0)


ORDER = {
    "id": "b0b6dd9d-8b9b-48a9-ba46-b9d54906e415",
    "client_order_id": "item-1",
    "symbol": "AAPL",
    "side": "buy",
    "type": "limit",
    "time_in_force": "day",
    "status": "FILLED",
    "qty": "10",
    "filled_qty": "10",
    "filled_avg_price": "150.25",
    "limit_price": "150.75",
    "extended_hours": True,
    "submitted_at": "2026-01-05T15:00:00.123456789Z",
    "filled_at": "2026-01-05T15:00:01Z",
}


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    async def fake_sleep(seconds):
        recorded.append(seconds)

    monkeypatch.setattr(retry, "asyncio", SimpleNamespace(sleep=fake_sleep))
    return recorded


@pytest.fixture
def make_client(monkeypatch):
    def _make(*responses):
        client = AlpacaClient("key", "secret")
        session = FakeSession(*responses)
        monkeypatch.setattr(client, "_get_session", lambda: session)
        return client, session

    return _make


class TestParsing:
    def test_parse_order(self):
        order = parse_order(ORDER)
        assert order.status == "filled"
        assert order.order_type == "limit"
        assert order.filled_avg_price == Decimal("150.25")
        assert order.limit_price == Decimal("150.75")
        assert order.extended_hours
        assert order.submitted_at == datetime(2026, 1, 5, 15, 0, 0, 123456, tzinfo=timezone.utc)
        assert order.notional is None

    def test_parse_ts(self):
        assert _parse_ts(None) is None
        assert _parse_ts("2026-01-05T15:00:00Z") == datetime(2026, 1, 5, 15, tzinfo=timezone.utc)

    def test_parse_position_defaults_available_to_qty(self):
        position = parse_position(
            {"symbol": "AAPL", "qty": "5", "avg_entry_price": "140.00", "current_price": "150.00"}
        )
        assert position.qty_available == Decimal("5")
        assert position.avg_entry_price == Decimal("140.00")
        assert position.market_value == Decimal("0")

    def test_parse_snapshot(self):
        snapshot = parse_snapshot(
            "AAPL",
            {
                "latestTrade": {"p": 150.1},
                "latestQuote": {"ap": 150.2, "bp": 150.0},
                "dailyBar": {"c": 149.5},
            },
        )
        assert snapshot.latest_trade_price == Decimal("150.1")
        assert snapshot.latest_quote_bid == Decimal("150.0")
        assert snapshot.prev_daily_close is None

    def test_error_message(self):
        assert _error_message('{"code": 40310000, "message": "insufficient buying power"}') == "insufficient buying power"
        assert _error_message("Bad Gateway") == "Bad Gateway"

    @pytest.mark.parametrize(
        "error,expected",
        [
            (OrderNotFoundError("x"), False),
            (BrokerAPIError("rejected", 422), False),
            (RateLimitError("slow down", 429), True),
            (BrokerAPIError("bad gateway", 502), True),
            (BrokerAPIError("Alpaca transport error: reset"), True),
        ],
    )
    def test_is_transient(self, error, expected):
        assert _is_transient(error) is expected


class TestRequests:
    @pytest.mark.asyncio
    async def test_submit_order(self, make_client, sleeps):
        client, session = make_client(FakeResponse(200, ORDER))
        params = {"symbol": "AAPL", "side": "buy", "type": "market", "qty": "10"}

        order = await client.submit_order(params)

        assert order.id == ORDER["id"]
        assert session.calls[0]["method"] == "POST"
        assert session.calls[0]["url"] == "https://paper-api.alpaca.markets/v2/orders"
        assert session.calls[0]["json"] == params
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, make_client, sleeps):
        body = {"code": 40310000, "message": "insufficient buying power"}
        client, session = make_client(FakeResponse(403, body))

        with pytest.raises(BrokerAPIError) as exc:
            await client.submit_order({"symbol": "AAPL", "side": "buy", "type": "market", "qty": "10"})

        assert str(exc.value) == "insufficient buying power"
        assert exc.value.status_code == 403
        assert len(session.calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, make_client, sleeps):
        client, session = make_client(FakeResponse(404, {"message": "order not found"}))
        with pytest.raises(OrderNotFoundError):
            await client.get_order("missing")
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self, make_client, sleeps):
        client, session = make_client(FakeResponse(429, "too many requests"), FakeResponse(200, ORDER))

        order = await client.get_order(ORDER["id"])

        assert order.status == "filled"
        assert len(session.calls) == 2
        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, make_client, sleeps):
        client, session = make_client(*[FakeResponse(503, "unavailable") for _ in range(4)])

        with pytest.raises(BrokerAPIError) as exc:
            await client.get_account()

        assert exc.value.status_code == 503
        assert len(session.calls) == 4
        assert len(sleeps) == 3
        assert sleeps[0] == 1.0

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, make_client, sleeps):
        client, session = make_client(
            FakeResponse(0, error=aiohttp.ClientConnectionError("connection reset")),
            FakeResponse(200, {"portfolio_value": "100000", "buying_power": "50000", "cash": "50000", "equity": "100000"}),
        )

        account = await client.get_account()

        assert account.buying_power == Decimal("50000")
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_cancel_no_content(self, make_client, sleeps):
        client, session = make_client(FakeResponse(204))
        assert await client.cancel_order("abc") is None
        assert session.calls[0]["method"] == "DELETE"

    @pytest.mark.asyncio
    async def test_missing_position(self, make_client, sleeps):
        client, _ = make_client(FakeResponse(404, {"message": "position does not exist"}))
        assert await client.get_position("AAPL") is None

    @pytest.mark.asyncio
    async def test_is_tradable(self, make_client, sleeps):
        client, session = make_client(
            FakeResponse(200, {"tradable": True, "status": "active"}),
            FakeResponse(200, {"tradable": False, "status": "active"}),
            FakeResponse(404, {"message": "asset not found"}),
        )
        assert await client.is_tradable("AAPL")
        assert not await client.is_tradable("XYZ")
        assert not await client.is_tradable("BTC/USD")
        assert session.calls[2]["url"].endswith("/v2/assets/BTCUSD")

    @pytest.mark.asyncio
    async def test_crypto_snapshot(self, make_client, sleeps):
        body = {"snapshots": {"BTC/USD": {"latestTrade": {"p": 60000}}}}
        client, session = make_client(FakeResponse(200, body))

        snapshot = await client.get_price_snapshot("BTC/USD")

        assert snapshot.best_price() == Decimal("60000")
        assert session.calls[0]["url"] == "https://data.alpaca.markets/v1beta3/crypto/us/snapshots"
        assert session.calls[0]["params"] == {"symbols": "BTC/USD"}
