"""Read-only market feeds: DexScreener token prices and Solana balances."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from sniper_sync.errors import RemoteError
from sniper_sync.models import TokenQuote

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# DexScreener accepts at most this many comma-separated addresses per call
MAX_MINTS_PER_REQUEST = 30


def _safe_float(value: Any) -> Optional[float]:
    """Safely convert value to float."""
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def extract_quotes(result: Any) -> Dict[str, TokenQuote]:
    """Project a DexScreener ``/tokens`` response onto one quote per mint.

    When several pools quote the same mint, the pool with the highest
    ``liquidity.usd`` wins; missing liquidity counts as zero and the first
    pool seen wins ties. Missing 24h change is reported as 0.
    """
    if isinstance(result, list):
        pairs = result
    elif isinstance(result, dict):
        pairs = result.get("pairs") or []
    else:
        return {}

    quotes: Dict[str, TokenQuote] = {}
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        base_token = pair.get("baseToken") or {}
        mint = base_token.get("address")
        if not mint:
            continue

        liquidity = pair.get("liquidity")
        liquidity_usd = _safe_float(liquidity.get("usd")) if isinstance(liquidity, dict) else None
        liquidity_usd = liquidity_usd or 0.0

        existing = quotes.get(mint)
        if existing is not None and liquidity_usd <= existing.liquidity_usd:
            continue

        price_change = pair.get("priceChange") or {}
        quotes[mint] = TokenQuote(
            mint_address=mint,
            price_usd=_safe_float(pair.get("priceUsd")),
            market_cap=_safe_float(pair.get("marketCap") or pair.get("fdv")),
            change_24h=_safe_float(price_change.get("h24")) or 0.0,
            liquidity_usd=liquidity_usd,
        )
    return quotes


class PriceFeed:
    """DexScreener token quote client."""

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com/latest/dex",
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._closed = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._closed:
            raise RemoteError(f"{type(self).__name__} is closed")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        self._closed = True
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch_quotes(self, mints: Iterable[str]) -> Dict[str, TokenQuote]:
        """Fetch the best quote for each mint."""
        mint_list: List[str] = list(dict.fromkeys(mints))
        quotes: Dict[str, TokenQuote] = {}
        if not mint_list:
            return quotes

        client = await self._get_client()
        for start in range(0, len(mint_list), MAX_MINTS_PER_REQUEST):
            batch = mint_list[start:start + MAX_MINTS_PER_REQUEST]
            url = f"{self.base_url}/tokens/{','.join(batch)}"
            try:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise RemoteError(f"Price feed request failed: {exc}") from exc
            quotes.update(extract_quotes(data))
        return quotes


class BalanceFeed:
    """Solana JSON-RPC ``getBalance`` client."""

    def __init__(
        self,
        rpc_url: str = "https://api.mainnet-beta.solana.com",
        timeout: float = 10.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._closed = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._closed:
            raise RemoteError(f"{type(self).__name__} is closed")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        self._closed = True
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch_balance(self, address: str) -> Optional[float]:
        """Return the wallet's SOL balance, or None if the node gave no value."""
        client = await self._get_client()
        try:
            response = await client.post(
                self.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "getBalance",
                    "params": [address],
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteError(f"Balance request failed: {exc}") from exc

        if isinstance(data, dict) and data.get("error"):
            raise RemoteError(f"Balance RPC error: {data['error']}")

        lamports = (data.get("result") or {}).get("value") if isinstance(data, dict) else None
        if lamports is None:
            logger.debug("No balance value returned for %s", address)
            return None
        return lamports / LAMPORTS_PER_SOL


__all__ = [
    "BalanceFeed",
    "LAMPORTS_PER_SOL",
    "PriceFeed",
    "extract_quotes",
]
