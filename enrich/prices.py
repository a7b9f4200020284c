from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class PriceQuoteClient:
    """
    USD quotes for payment tokens.

    Primary: GET https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies=usd
    Unlisted ERC-20s: GET https://api.coingecko.com/api/v3/simple/token_price/ethereum?contract_addresses={addr}&vs_currencies=usd
    ETH fallback: GET https://min-api.cryptocompare.com/data/price?fsym=ETH&tsyms=USD
    """
    COINGECKO = "https://api.coingecko.com/api/v3/simple/price"
    COINGECKO_TOKEN = "https://api.coingecko.com/api/v3/simple/token_price/ethereum"
    CRYPTOCOMPARE = "https://min-api.cryptocompare.com/data/price"

    COIN_IDS = {
        "eth": "ethereum",
        "weth": "ethereum",
        "usdc": "usd-coin",
        "usdt": "tether",
        "dai": "dai",
        "matic": "matic-network",
        "pol": "matic-network",
        "bnb": "binancecoin",
        "sol": "solana",
        "ape": "apecoin",
    }

    def __init__(self, ttl_seconds: int = 300, session: Optional[requests.Session] = None):
        self.ttl = ttl_seconds
        self.cache: Dict[str, tuple[float, Any]] = {}
        if session is None:
            session = requests.Session()
            retries = Retry(
                total=3,
                backoff_factor=0.5,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"],
                raise_on_status=False,
            )
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session

    def _cache_get(self, key: str, allow_stale: bool = False) -> Optional[Any]:
        item = self.cache.get(key)
        if not item:
            return None
        ts, val = item
        if not allow_stale and (time.time() - ts) > self.ttl:
            return None
        return val

    def _cache_set(self, key: str, val: Any) -> None:
        self.cache[key] = (time.time(), val)

    def get_usd_price(self, symbol: str, token_address: Optional[str] = None) -> Optional[float]:
        """Returns the USD price of one whole token, or None when no quote is available."""
        key = (symbol or "eth").lower()
        if key not in self.COIN_IDS:
            if not token_address:
                logger.debug("No price source for %s", key)
                return None
            key = token_address.lower()
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        try:
            price = self._fetch_coingecko(key)
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.warning("CoinGecko quote for %s failed: %s", key, e)
            price = None
            if key in ("eth", "weth"):
                try:
                    price = self._fetch_cryptocompare_eth()
                except (requests.RequestException, ValueError, KeyError) as e2:
                    logger.error("CryptoCompare ETH quote failed: %s", e2)

        if price is None:
            stale = self._cache_get(key, allow_stale=True)
            if stale is not None:
                logger.warning("Using expired cached price for %s: $%s", key, stale)
            return stale

        self._cache_set(key, price)
        return price

    def _fetch_coingecko(self, key: str) -> float:
        coin_id = self.COIN_IDS.get(key)
        if coin_id is None:
            return self._fetch_coingecko_token(key)
        r = self.session.get(
            self.COINGECKO,
            params={"ids": coin_id, "vs_currencies": "usd"},
            headers={"Accept": "application/json"},
            timeout=10,
        )
        r.raise_for_status()
        return float(r.json()[coin_id]["usd"])

    def _fetch_coingecko_token(self, address: str) -> float:
        r = self.session.get(
            self.COINGECKO_TOKEN,
            params={"contract_addresses": address, "vs_currencies": "usd"},
            headers={"Accept": "application/json"},
            timeout=10,
        )
        r.raise_for_status()
        return float(r.json()[address]["usd"])

    def _fetch_cryptocompare_eth(self) -> float:
        r = self.session.get(self.CRYPTOCOMPARE, params={"fsym": "ETH", "tsyms": "USD"}, timeout=10)
        r.raise_for_status()
        return float(r.json()["USD"])
