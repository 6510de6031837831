"""
Alpaca REST client.

Implements the BrokerClient protocol against the Alpaca trading and market
data APIs:
- trading: orders, positions, account, assets (paper or live base URL)
- market data: latest trade / quote / daily bars for stocks and crypto

Transport failures and 5xx/429 responses are retried here with exponential
backoff. 4xx responses surface immediately as BrokerAPIError carrying the
broker's own message, so rejection text reaches the retry engine verbatim.
"""
import asyncio
import json
import re
import ssl
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
import certifi

from tradeguard.domain.models import Account, BrokerOrder, BrokerPosition, PriceSnapshot, is_crypto_symbol
from tradeguard.exceptions import BrokerAPIError, OrderNotFoundError, RateLimitError
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.money import ZERO, to_decimal
from tradeguard.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def _is_transient(error: Exception) -> bool:
    """Retry transport errors, 429 and 5xx; never a 4xx order rejection."""
    if isinstance(error, OrderNotFoundError):
        return False
    if isinstance(error, BrokerAPIError) and error.status_code is not None:
        return error.status_code == 429 or error.status_code >= 500
    return True


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # Alpaca sends nanosecond precision; fromisoformat takes microseconds
    text = _FRACTION_RE.sub(r".\1", value.replace("Z", "+00:00"))
    return datetime.fromisoformat(text)


def _error_message(text: str) -> str:
    """Alpaca error bodies are {"code": ..., "message": ...}; anything else is passed through."""
    try:
        body = json.loads(text)
    except ValueError:
        return text
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return text


def parse_order(data: Dict[str, Any]) -> BrokerOrder:
    return BrokerOrder(
        id=data["id"],
        symbol=data.get("symbol", ""),
        side=data.get("side", ""),
        status=(data.get("status") or "unknown").lower(),
        order_type=data.get("type") or data.get("order_type") or "market",
        time_in_force=data.get("time_in_force") or "day",
        client_order_id=data.get("client_order_id"),
        qty=to_decimal(data.get("qty")),
        notional=to_decimal(data.get("notional")),
        filled_qty=to_decimal(data.get("filled_qty"), ZERO),
        filled_avg_price=to_decimal(data.get("filled_avg_price")),
        limit_price=to_decimal(data.get("limit_price")),
        stop_price=to_decimal(data.get("stop_price")),
        order_class=data.get("order_class") or None,
        extended_hours=bool(data.get("extended_hours", False)),
        submitted_at=_parse_ts(data.get("submitted_at")),
        filled_at=_parse_ts(data.get("filled_at")),
        failed_at=_parse_ts(data.get("failed_at")),
        canceled_at=_parse_ts(data.get("canceled_at")),
        created_at=_parse_ts(data.get("created_at")),
    )


def parse_position(data: Dict[str, Any]) -> BrokerPosition:
    qty = to_decimal(data.get("qty"), ZERO)
    return BrokerPosition(
        symbol=data["symbol"],
        qty=qty,
        qty_available=to_decimal(data.get("qty_available"), qty),
        avg_entry_price=to_decimal(data.get("avg_entry_price"), ZERO),
        current_price=to_decimal(data.get("current_price"), ZERO),
        market_value=to_decimal(data.get("market_value"), ZERO),
        unrealized_pl=to_decimal(data.get("unrealized_pl"), ZERO),
        unrealized_plpc=to_decimal(data.get("unrealized_plpc"), ZERO),
        side=data.get("side", "long"),
    )


def parse_snapshot(symbol: str, data: Dict[str, Any]) -> PriceSnapshot:
    trade = data.get("latestTrade") or {}
    quote = data.get("latestQuote") or {}
    daily = data.get("dailyBar") or {}
    prev = data.get("prevDailyBar") or {}
    return PriceSnapshot(
        symbol=symbol,
        latest_trade_price=to_decimal(trade.get("p")),
        latest_quote_ask=to_decimal(quote.get("ap")),
        latest_quote_bid=to_decimal(quote.get("bp")),
        daily_close=to_decimal(daily.get("c")),
        prev_daily_close=to_decimal(prev.get("c")),
    )


class AlpacaClient:
    """
    Async Alpaca client with a shared aiohttp session.

    Use as an async context manager, or call close() when done.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://paper-api.alpaca.markets",
        data_url: str = "https://data.alpaca.markets",
        timeout_seconds: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.data_url = data_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._headers = {
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": api_secret,
            "Content-Type": "application/json",
        }
        self._session: Optional[aiohttp.ClientSession] = None
        self._ssl_context: Optional[ssl.SSLContext] = None
        logger.info("Alpaca client initialized", base_url=self.base_url, paper="paper-api" in self.base_url)

    @classmethod
    def from_config(cls, config) -> "AlpacaClient":
        return cls(
            api_key=config.api_key,
            api_secret=config.api_secret,
            base_url=config.base_url,
            data_url=config.data_url,
            timeout_seconds=config.request_timeout_seconds,
        )

    async def __aenter__(self) -> "AlpacaClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Reusable SSL context with certifi certificates."""
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout, headers=self._headers)
        return self._session

    @retry_on_transient_errors(max_retries=3, base_delay=1.0, is_retryable=_is_transient)
    async def _request(
        self,
        method: str,
        path: str,
        *,
        base: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        order_id: Optional[str] = None,
    ) -> Any:
        url = f"{base or self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, params=params, json=body) as response:
                if response.status == 204:
                    return None
                if response.status < 400:
                    return await response.json()

                message = _error_message(await response.text())

                if response.status == 404 and order_id is not None:
                    raise OrderNotFoundError(order_id)
                if response.status == 429:
                    raise RateLimitError(f"Alpaca rate limit exceeded: {message}", 429)
                logger.warning("Alpaca API error", method=method, path=path, status=response.status, error=message)
                raise BrokerAPIError(message, response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BrokerAPIError(f"Alpaca transport error: {e}") from e

    # ========== ORDERS ==========

    async def submit_order(self, params: Dict[str, Any]) -> BrokerOrder:
        data = await self._request("POST", "/v2/orders", body=params)
        order = parse_order(data)
        logger.info(
            "Alpaca order submitted",
            symbol=order.symbol,
            side=order.side,
            order_id=order.id,
            client_order_id=order.client_order_id,
            status=order.status,
        )
        return order

    async def get_order(self, order_id: str) -> BrokerOrder:
        return parse_order(await self._request("GET", f"/v2/orders/{order_id}", order_id=order_id))

    async def cancel_order(self, order_id: str) -> None:
        await self._request("DELETE", f"/v2/orders/{order_id}", order_id=order_id)

    async def list_open_orders(self, symbol: Optional[str] = None) -> List[BrokerOrder]:
        params: Dict[str, Any] = {"status": "open", "limit": 500}
        if symbol:
            params["symbols"] = symbol
        return [parse_order(o) for o in await self._request("GET", "/v2/orders", params=params) or []]

    # ========== POSITIONS & ACCOUNT ==========

    async def get_positions(self) -> List[BrokerPosition]:
        return [parse_position(p) for p in await self._request("GET", "/v2/positions") or []]

    async def get_position(self, symbol: str) -> Optional[BrokerPosition]:
        try:
            data = await self._request("GET", f"/v2/positions/{symbol.replace('/', '')}")
        except BrokerAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return parse_position(data)

    async def close_position(self, symbol: str) -> BrokerOrder:
        data = await self._request("DELETE", f"/v2/positions/{symbol.replace('/', '')}")
        return parse_order(data)

    async def get_account(self) -> Account:
        data = await self._request("GET", "/v2/account")
        return Account(
            portfolio_value=to_decimal(data.get("portfolio_value"), ZERO),
            buying_power=to_decimal(data.get("buying_power"), ZERO),
            cash=to_decimal(data.get("cash"), ZERO),
            equity=to_decimal(data.get("equity"), ZERO),
        )

    async def is_tradable(self, symbol: str) -> bool:
        try:
            data = await self._request("GET", f"/v2/assets/{symbol.replace('/', '')}")
        except BrokerAPIError as e:
            if e.status_code == 404:
                return False
            raise
        return bool(data.get("tradable")) and data.get("status", "active") == "active"

    # ========== MARKET DATA ==========

    async def get_price_snapshot(self, symbol: str) -> PriceSnapshot:
        if is_crypto_symbol(symbol):
            data = await self._request(
                "GET", "/v1beta3/crypto/us/snapshots", base=self.data_url, params={"symbols": symbol}
            )
            return parse_snapshot(symbol, (data.get("snapshots") or {}).get(symbol) or {})
        data = await self._request("GET", f"/v2/stocks/{symbol}/snapshot", base=self.data_url)
        return parse_snapshot(symbol, data or {})
