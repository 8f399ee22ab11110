from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import requests

from relaybot.exchange.base import ErrorKind, ExchangeError
from relaybot.exchange.cache import TTLCache
from relaybot.exchange.credentials import ExchangeCredentials, redact_headers
from relaybot.persistence.audit import AuditSink, ExchangeCall, NullAudit

log = logging.getLogger("relaybot.exchange")


def build_query(params: Optional[dict]) -> str:
    return urlencode(params or {}, doseq=True)


def compact_json(body: Optional[dict]) -> str:
    if not body:
        return ""
    return json.dumps(body, separators=(",", ":"))


class RestClient:
    """
    Shared plumbing for the signed REST connectors.

    Subclasses provide:
      name, client_oid_max_len
      _auth_headers(method, request_path, query, body) -> headers
      _unwrap(http_status, data) -> payload (raises ExchangeError)
    """

    name = "exchange"
    client_oid_max_len = 64

    def __init__(
        self,
        credentials: Optional[ExchangeCredentials],
        base_url: str,
        *,
        timeout: float = 15.0,
        public_max_retries: int = 3,
        audit: Optional[AuditSink] = None,
        contract_cache: Optional[TTLCache] = None,
        price_cache: Optional[TTLCache] = None,
        user_id: Optional[int] = None,
        strategy_id: Optional[int] = None,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.public_max_retries = int(public_max_retries)
        self.audit = audit or NullAudit()
        self.contract_cache = contract_cache or TTLCache(300.0)
        self.price_cache = price_cache or TTLCache(5.0)
        self.user_id = user_id
        self.strategy_id = strategy_id

    # ------------------------------------------------------------------
    # Public market data: retried with backoff (read-only, safe to replay)
    # ------------------------------------------------------------------
    def _public_get(self, path: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        params = dict(params or {})

        last_err: Any = None
        for attempt in range(self.public_max_retries + 1):
            try:
                r = requests.request("GET", url, params=params, timeout=self.timeout)

                # Rate limit
                if r.status_code == 429:
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    last_err = "HTTP 429"
                    time.sleep(min(sleep_s, 10.0))
                    continue

                # Server errors
                if r.status_code >= 500:
                    last_err = f"HTTP {r.status_code}"
                    time.sleep(min(0.4 * (2**attempt), 8.0))
                    continue

                data = self._parse_json(r)
                return self._unwrap(r.status_code, data)

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                time.sleep(min(0.4 * (2**attempt), 8.0))
                continue

        raise ExchangeError(
            f"{self.name} public request failed after retries: GET {path} ({last_err})"
        )

    # ------------------------------------------------------------------
    # Signed requests: exactly one attempt, every call audited
    # ------------------------------------------------------------------
    def _signed(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        symbol: Optional[str] = None,
        client_oid: Optional[str] = None,
    ) -> Any:
        if not self.credentials:
            raise ExchangeError(f"Missing {self.name} API credentials")

        method = method.upper()
        query = build_query(params)
        body_str = compact_json(body) if method != "GET" else ""
        headers = self._auth_headers(method, path, query, body_str)
        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")

        status: Optional[int] = None
        data: Any = None
        try:
            r = requests.request(
                method,
                url,
                headers=headers,
                data=body_str or None,
                timeout=self.timeout,
            )
            status = r.status_code
            data = self._parse_json(r)
            result = self._unwrap(status, data)
        except ExchangeError as e:
            self._record(
                operation, method, path, body or params, headers, data, status,
                False, str(e), symbol, None, client_oid,
            )
            raise
        except requests.RequestException as e:
            self._record(
                operation, method, path, body or params, headers, data, status,
                False, str(e), symbol, None, client_oid,
            )
            raise ExchangeError(
                f"{self.name} request failed: {method} {path} ({e})",
                http_status=status,
            ) from e

        order_id, echoed_oid = self._ids_from(result)
        self._record(
            operation, method, path, body or params, headers, data, status,
            True, None, symbol, order_id, echoed_oid or client_oid,
        )
        return result

    def _record(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Any,
        headers: Dict[str, str],
        response: Any,
        status: Optional[int],
        success: bool,
        error: Optional[str],
        symbol: Optional[str],
        order_id: Optional[str],
        client_oid: Optional[str],
    ) -> None:
        try:
            self.audit.exchange_call(
                ExchangeCall(
                    exchange=self.name,
                    operation=operation,
                    method=method,
                    path=path,
                    payload=payload,
                    headers=redact_headers(headers),
                    response=response,
                    status=status,
                    success=success,
                    error=error,
                    symbol=symbol,
                    user_id=self.user_id,
                    strategy_id=self.strategy_id,
                    order_id=order_id,
                    client_oid=client_oid,
                )
            )
        except Exception:
            log.exception("audit sink failed for %s %s", method, path)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _parse_json(self, r: requests.Response) -> Any:
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            raise ExchangeError(
                f"{self.name} HTTP {r.status_code}: {r.text[:200]}",
                http_status=r.status_code,
            )

    @staticmethod
    def _ids_from(result: Any) -> Tuple[Optional[str], Optional[str]]:
        if not isinstance(result, dict):
            return None, None
        oid = result.get("orderId")
        coid = result.get("clientOid") or result.get("orderLinkId")
        return (str(oid) if oid else None), (str(coid) if coid else None)

    def _auth_headers(
        self, method: str, path: str, query: str, body: str
    ) -> Dict[str, str]:
        raise NotImplementedError

    def _unwrap(self, http_status: int, data: Any) -> Any:
        raise NotImplementedError

    def _error(
        self, message: str, code: Any, http_status: Optional[int], data: Any
    ) -> ExchangeError:
        code_s = str(code) if code is not None else None
        return ExchangeError(
            message,
            kind=self._classify(code_s, message),
            code=code_s,
            http_status=http_status,
            response=data,
        )

    def _classify(self, code: Optional[str], message: str) -> ErrorKind:
        return ErrorKind.OTHER
