from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import config

from .errors import FetchTimeoutError, InvalidResponseError, NetworkError


@dataclass(frozen=True)
class P2PMarketSnapshot:
    success: bool
    trader_prices: list[Decimal]
    total_traders: int
    median: Decimal | None
    error: str | None = None


@dataclass(frozen=True)
class BuySellQuote:
    buy: Decimal
    sell: Decimal


class _JsonHttpClient:
    service_name = "upstream"

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 0,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.timeout = timeout
        self._session = session or requests.Session()

        if retry_attempts > 0:
            retry = Retry(
                total=retry_attempts,
                backoff_factor=retry_backoff_seconds,
                status_forcelist={429},
                allowed_methods=frozenset({"GET", "POST"}),
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            self._session.mount("https://", adapter)
            self._session.mount("http://", adapter)

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            message, payload = self._extract_error(resp)
            raise NetworkError(message, status_code=status_code, payload=payload) from exc
        except requests.Timeout as exc:
            raise FetchTimeoutError(f"{self.service_name} request timed out") from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise NetworkError(f"{self.service_name} request failed", status_code=status_code) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise InvalidResponseError(f"{self.service_name} returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict):
            raise InvalidResponseError(f"{self.service_name} returned unexpected payload type", payload=payload)
        return payload

    def _extract_error(self, response: Response | None) -> tuple[str, Any | None]:
        message = f"{self.service_name} request failed"
        payload: Any | None = None
        if response is None:
            return message, payload

        try:
            payload = response.json()
            if isinstance(payload, dict):
                message = payload.get("error") or payload.get("message") or message
        except ValueError:
            payload = response.text
        return str(message), payload

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None


class P2PProxyClient(_JsonHttpClient):
    """Client for the proxy that fronts the P2P marketplace and summarises its order book."""

    service_name = "P2P proxy"

    def __init__(
        self,
        *,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float = 25.0,
        session: requests.Session | None = None,
        retry_attempts: int = 0,
    ) -> None:
        super().__init__(timeout=timeout, session=session, retry_attempts=retry_attempts)
        self.url = url if url is not None else config().p2p_proxy_url
        self.api_key = api_key if api_key is not None else config().p2p_proxy_api_key

    def get_market(
        self,
        *,
        currency_id: str = "NGN",
        token_id: str = "USDT",
        verified_only: bool = True,
    ) -> P2PMarketSnapshot:
        body = {
            "currencyId": currency_id,
            "tokenId": token_id,
            "verifiedOnly": verified_only,
            "requestTimestamp": int(time.time() * 1000),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        payload = self._request("POST", self.url, json=body, headers=headers)
        return self._parse_market(payload)

    def _parse_market(self, payload: dict[str, Any]) -> P2PMarketSnapshot:
        traders = payload.get("traders") or []
        if not isinstance(traders, list):
            raise InvalidResponseError("P2P proxy returned a malformed trader list", payload=payload)

        prices = [
            price
            for price in (self._to_decimal(trader.get("price")) for trader in traders if isinstance(trader, dict))
            if price is not None
        ]

        summary = payload.get("market_summary")
        if not isinstance(summary, dict):
            summary = {}
        price_range = summary.get("price_range")
        if not isinstance(price_range, dict):
            price_range = {}
        total_raw = summary.get("total_traders")
        try:
            total_traders = int(total_raw) if total_raw is not None else len(prices)
        except (TypeError, ValueError):
            total_traders = len(prices)

        return P2PMarketSnapshot(
            success=bool(payload.get("success")),
            trader_prices=prices,
            total_traders=total_traders,
            median=self._to_decimal(price_range.get("median")),
            error=payload.get("error"),
        )


class ForexRatesClient(_JsonHttpClient):
    """Latest ``TARGET/USD`` rates from the forex provider."""

    service_name = "Forex provider"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
        retry_attempts: int = 2,
    ) -> None:
        super().__init__(timeout=timeout, session=session, retry_attempts=retry_attempts)
        self.base_url = (base_url if base_url is not None else config().forex_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else config().forex_api_key

    def get_latest_rates(self, *, currencies: Iterable[str]) -> dict[str, Decimal]:
        codes = [code.upper() for code in currencies]
        params = {"apikey": self.api_key, "currencies": ",".join(codes)}
        payload = self._request("GET", f"{self.base_url}/latest", params=params)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise InvalidResponseError("Forex provider payload missing data", payload=payload)

        rates: dict[str, Decimal] = {}
        for code_raw, rate_raw in data.items():
            rate = self._to_decimal(rate_raw)
            if rate is not None:
                rates[str(code_raw).upper()] = rate
        return rates


class ComparisonRatesClient(_JsonHttpClient):
    """Buy/sell NGN prices published by the comparison broker."""

    service_name = "Comparison broker"

    def __init__(
        self,
        *,
        url: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 2,
    ) -> None:
        super().__init__(timeout=timeout, session=session, retry_attempts=retry_attempts)
        self.url = url if url is not None else config().comparison_url

    def get_rates(self) -> dict[str, BuySellQuote]:
        payload = self._request("GET", self.url)
        rates_raw = payload.get("rates")
        if not isinstance(rates_raw, dict):
            raise InvalidResponseError("Comparison broker payload missing rates", payload=payload)

        rates: dict[str, BuySellQuote] = {}
        for code_raw, entry in rates_raw.items():
            if not isinstance(entry, dict):
                continue
            buy = self._to_decimal(entry.get("buy"))
            sell = self._to_decimal(entry.get("sell"))
            if buy is None or sell is None:
                continue
            rates[str(code_raw).upper()] = BuySellQuote(buy=buy, sell=sell)
        return rates


__all__ = [
    "BuySellQuote",
    "ComparisonRatesClient",
    "ForexRatesClient",
    "P2PMarketSnapshot",
    "P2PProxyClient",
]
