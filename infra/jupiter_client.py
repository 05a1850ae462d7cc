"""
Jupiter HTTP adapter (token search + swap quotes).

Implements MarketDataProvider and QuoteService on top of httpx.AsyncClient.
Transport problems are translated into the trading error taxonomy:

  HTTP 429              -> RateLimitError
  timeouts              -> RequestTimeoutError
  quote 400/404/no route -> QuoteUnavailableError
  anything else         -> ProviderError

Pacing and retry are the caller's job (RateLimiter + infra.retry).
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.exceptions import ProviderError, QuoteUnavailableError, RateLimitError, RequestTimeoutError
from core.models import MarketSnapshot, Quote
from core.venue import MarketDataProvider, QuoteService

logger = logging.getLogger(__name__)

QUOTE_URL = "https://quote-api.jup.ag/v6/quote"
TOKEN_SEARCH_URL = "https://lite-api.jup.ag/tokens/v2/search"

DEFAULT_TIMEOUT = 10.0
DEFAULT_SLIPPAGE_BPS = 50
USER_AGENT = "onchain-trader/1.0"


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class JupiterClient(MarketDataProvider, QuoteService):
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        quote_url: str = QUOTE_URL,
        token_search_url: str = TOKEN_SEARCH_URL,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        )
        self.slippage_bps = slippage_bps
        self.quote_url = quote_url
        self.token_search_url = token_search_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "JupiterClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _get(self, url: str, params: Dict[str, str], source: str) -> httpx.Response:
        try:
            resp = await self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"{source} timed out", source=source, original=exc)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{source} request failed: {exc}", source=source, original=exc)

        if resp.status_code == 429:
            logger.warning(f"Jupiter {source} rate-limited (429)")
            raise RateLimitError(f"{source} rate limited", source=source)
        return resp

    async def get_market_snapshot(self, token_address: str) -> Optional[MarketSnapshot]:
        resp = await self._get(self.token_search_url, {"query": token_address}, "token_search")
        if resp.status_code >= 400:
            raise ProviderError(
                f"token_search HTTP {resp.status_code}: {resp.text[:200]}", source="token_search"
            )

        try:
            tokens = resp.json()
        except ValueError as exc:
            raise ProviderError("token_search returned invalid JSON", source="token_search", original=exc)

        wanted = token_address.lower()
        match = next(
            (t for t in tokens or () if isinstance(t, dict) and str(t.get("id", "")).lower() == wanted),
            None,
        )
        if match is None:
            logger.debug(f"Token {token_address[:8]} not found on Jupiter")
            return None

        stats = match.get("stats24h") or {}
        volume = _as_float(stats.get("buyVolume")) + _as_float(stats.get("sellVolume"))
        return MarketSnapshot(
            token_address=token_address,
            price=_as_float(match.get("usdPrice")),
            liquidity_usd=_as_float(match.get("liquidity")),
            volume_24h=volume,
            holder_count=int(_as_float(match.get("holderCount"))),
            verified=bool(match.get("isVerified", False)),
            organic_score=_as_float(match.get("organicScore")),
            symbol=match.get("symbol"),
        )

    async def get_quote(self, input_asset: str, output_asset: str, amount: float) -> Quote:
        base_units = int(amount)
        if base_units < 1:
            raise QuoteUnavailableError(f"amount {amount} rounds to zero base units", source="quote")

        params = {
            "inputMint": input_asset,
            "outputMint": output_asset,
            "amount": str(base_units),
            "slippageBps": str(self.slippage_bps),
        }
        resp = await self._get(self.quote_url, params, "quote")
        if resp.status_code in (400, 404):
            raise QuoteUnavailableError(f"no route: HTTP {resp.status_code} {resp.text[:200]}", source="quote")
        if resp.status_code >= 400:
            raise ProviderError(f"quote HTTP {resp.status_code}: {resp.text[:200]}", source="quote")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("quote returned invalid JSON", source="quote", original=exc)

        if data.get("error") or "outAmount" not in data:
            raise QuoteUnavailableError(f"no route: {data.get('error', 'missing outAmount')}", source="quote")

        routes = tuple(
            str((step.get("swapInfo") or {}).get("label", "unknown"))
            for step in data.get("routePlan") or ()
        )
        quote = Quote(
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=_as_float(data.get("inAmount"), float(base_units)),
            expected_output=_as_float(data.get("outAmount")),
            price_impact_pct=_as_float(data.get("priceImpactPct")),
            routes=routes,
        )
        logger.debug(
            f"Quote {input_asset[:8]}->{output_asset[:8]}: {quote.input_amount} -> {quote.expected_output} "
            f"impact={quote.price_impact_pct}% hops={len(routes)}"
        )
        return quote
