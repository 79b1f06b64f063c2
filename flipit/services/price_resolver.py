"""USD price resolution across an ordered list of quote sources."""

import asyncio
import logging
import math
import time

import httpx

from flipit.config import settings

logger = logging.getLogger(__name__)


def _valid_price(value) -> float | None:
    """Coerce a quote to a positive finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


class PriceSource:
    """One upstream quote API. ``quote`` returns a raw value or None."""

    name = "base"

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.price_timeout_seconds,
                headers={"accept": "application/json"},
            )
        return self._client

    def supports(self, mint: str) -> bool:
        return True

    async def quote(self, mint: str):
        raise NotImplementedError

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class PumpFunSource(PriceSource):
    """Bonding-curve price for tokens still trading on pump.fun."""

    name = "pumpfun"

    def __init__(self, client: httpx.AsyncClient | None = None, base_url: str | None = None):
        super().__init__(client)
        self.base_url = (base_url or settings.pumpfun_api_url).rstrip("/")

    def supports(self, mint: str) -> bool:
        return mint.endswith("pump")

    async def quote(self, mint: str):
        res = await self._http().get(f"{self.base_url}/{mint}")
        if res.status_code != 200:
            return None
        data = res.json() or {}
        # Graduated tokens trade on an AMM; let the aggregators price them
        if data.get("complete"):
            return None
        market_cap = _valid_price(data.get("usd_market_cap"))
        supply = _valid_price(data.get("total_supply"))
        if market_cap is None or supply is None:
            return None
        return market_cap / (supply / 1e6)


class JupiterSource(PriceSource):
    name = "jupiter"

    def __init__(self, client: httpx.AsyncClient | None = None, base_url: str | None = None):
        super().__init__(client)
        self.base_url = base_url or settings.jupiter_price_url

    async def quote(self, mint: str):
        res = await self._http().get(self.base_url, params={"ids": mint})
        if res.status_code != 200:
            return None
        entry = ((res.json() or {}).get("data") or {}).get(mint) or {}
        return entry.get("price")


class DexScreenerSource(PriceSource):
    """Price of the most liquid pair listed for the token."""

    name = "dexscreener"

    def __init__(self, client: httpx.AsyncClient | None = None, base_url: str | None = None):
        super().__init__(client)
        self.base_url = (base_url or settings.dexscreener_url).rstrip("/")

    async def quote(self, mint: str):
        res = await self._http().get(f"{self.base_url}/{mint}")
        if res.status_code != 200:
            return None
        pairs = (res.json() or {}).get("pairs") or []
        if not pairs:
            return None
        best = max(pairs, key=lambda p: (p.get("liquidity") or {}).get("usd") or 0)
        return best.get("priceUsd")


def default_sources() -> list[PriceSource]:
    return [PumpFunSource(), JupiterSource(), DexScreenerSource()]


class PriceResolver:
    """Resolve token prices by falling through sources in priority order.

    ``resolve`` never raises: every source failure (timeout, HTTP error,
    malformed or non-positive quote) moves on to the next source, and an
    exhausted chain yields None. No price is ever synthesized.
    """

    def __init__(
        self,
        sources: list[PriceSource] | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
        cache_ttl: float | None = None,
    ):
        self.sources = sources if sources is not None else default_sources()
        self.timeout = timeout if timeout is not None else settings.price_timeout_seconds
        self.concurrency = concurrency or settings.price_concurrency
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.price_cache_ttl_seconds
        self._cache: dict[str, tuple[float, float]] = {}

    def _cached(self, mint: str) -> float | None:
        hit = self._cache.get(mint)
        if hit is None:
            return None
        price, stored_at = hit
        if time.monotonic() - stored_at > self.cache_ttl:
            self._cache.pop(mint, None)
            return None
        return price

    async def resolve(self, mint: str) -> float | None:
        if self.cache_ttl > 0:
            cached = self._cached(mint)
            if cached is not None:
                return cached

        for source in self.sources:
            if not source.supports(mint):
                continue
            try:
                raw = await asyncio.wait_for(source.quote(mint), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.debug(f"[price] {source.name} timed out for {mint}")
                continue
            except Exception as e:
                logger.debug(f"[price] {source.name} failed for {mint}: {e}")
                continue
            price = _valid_price(raw)
            if price is not None:
                if self.cache_ttl > 0:
                    self._cache[mint] = (price, time.monotonic())
                return price

        logger.info(f"[price] No price available for {mint}")
        return None

    async def resolve_many(self, mints) -> dict[str, float]:
        unique = list(dict.fromkeys(m for m in mints if m))
        if not unique:
            return {}

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(mint: str):
            async with semaphore:
                return mint, await self.resolve(mint)

        results = await asyncio.gather(*(_one(m) for m in unique))
        return {mint: price for mint, price in results if price is not None}

    async def aclose(self):
        for source in self.sources:
            await source.aclose()


_resolver: PriceResolver | None = None


def get_resolver() -> PriceResolver:
    global _resolver
    if _resolver is None:
        _resolver = PriceResolver()
    return _resolver
