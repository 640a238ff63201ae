"""
connector 公共底座：初始化守卫 / 鉴权头 / HTTP 调度 / 限流头解析 / 最近错误
  - 所有网络调用都返回 ApiResult；传输层错误（非 2xx、超时、断网）不会抛给 Manager
  - 429 对所有方法退避重试（优先 Retry-After）；5xx 与网络错误只对 GET 重试
  - 401 且平台可刷新 token：刷新一次后重放
  - 限流三元组每次响应后更新，只观测不阻塞（除非开启可选令牌桶）
"""

from __future__ import annotations

import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import requests

from marketplace_hub.core.config import settings
from marketplace_hub.infrastructure.ratelimit import RedisTokenBucketLimiter
from marketplace_hub.utils.backoff import calc_backoff_seconds
from marketplace_hub.utils.clock import ensure_utc, now_utc

from ..dto import InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus
from ..errors import ConnectorConfigError, ConnectorNotInitializedError
from ..normalizers import to_int
from ..platform import Platform
from ..result import ApiResult

logger = logging.getLogger(__name__)


class BasePlatformConnector(ABC):

    platform: Platform
    max_page_size: int = 250
    supports_token_refresh: bool = False

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._session = session or requests.Session()
        self.timeout = timeout or settings.MARKETPLACE_HTTP_TIMEOUT
        self.max_retries = settings.MARKETPLACE_HTTP_RETRIES if max_retries is None else max_retries
        self.backoff_ms = settings.MARKETPLACE_HTTP_BACKOFF_MS if backoff_ms is None else backoff_ms
        self._sleep = sleep or time.sleep

        self.connection = None
        self.tokens_refreshed = False
        self._rate_limit = RateLimitStatus()
        self._last_error: Optional[str] = None
        self._limiter: Optional[RedisTokenBucketLimiter] = None


    # ---------- Contract: lifecycle ----------
    def get_platform(self) -> Platform:
        return self.platform

    def initialize(self, connection) -> "BasePlatformConnector":
        self.connection = connection
        self.tokens_refreshed = False
        self._last_error = None
        self._limiter = RedisTokenBucketLimiter.from_settings(
            platform=self.platform.value, connection_id=getattr(connection, "id", None)
        )
        return self

    @property
    def initialized(self) -> bool:
        return self.connection is not None

    def _require_connection(self):
        if self.connection is None:
            raise ConnectorNotInitializedError(
                f"{type(self).__name__}.initialize(connection) must be called before any network operation"
            )
        return self.connection

    def test_connection(self) -> bool:
        """廉价只读调用；任何失败都返回 False。"""
        try:
            return bool(self._ping())
        except ConnectorConfigError as e:
            self._error(str(e))
            return False

    def refresh_tokens_if_needed(self) -> bool:
        conn = self._require_connection()
        if not self.platform.requires_oauth or not self.supports_token_refresh:
            return True

        expires_at = ensure_utc(getattr(conn, "token_expires_at", None))
        skew = timedelta(seconds=settings.MARKETPLACE_TOKEN_REFRESH_SKEW_SEC)
        if getattr(conn, "access_token", None):
            # 过期时间未知：先用着，401 时再刷新
            if expires_at is None or expires_at > now_utc() + skew:
                return True
        return self._refresh_tokens()


    # ---------- Contract: capability-gated ops ----------
    def get_orders(self, since=None, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformOrder]:
        if not self.platform.supports_order_sync:
            return Page.failed(self._error(f"order sync not supported on {self.platform.label}"))
        return self._get_orders(since, self._page_size(limit), cursor)

    def update_inventory(self, update: InventoryUpdate) -> bool:
        if not self.platform.supports_inventory_sync:
            self._error(f"inventory sync not supported on {self.platform.label}")
            return False
        return bool(self._update_inventory(update))

    def bulk_update_inventory(self, updates: Iterable[InventoryUpdate]) -> Dict[str, bool]:
        """逐条独立执行；一条失败不影响其它条。"""
        results: Dict[str, bool] = {}
        for update in updates:
            key = update.sku or update.external_variant_id or update.external_id or ""
            results[key] = self.update_inventory(update)
        return results


    # ---------- Contract: diagnostics ----------
    def get_rate_limit_status(self) -> RateLimitStatus:
        return dataclasses.replace(self._rate_limit)

    def get_last_error(self) -> Optional[str]:
        return self._last_error


    # ---------- Platform specifics ----------
    @abstractmethod
    def _base_url(self) -> str:
        """缺 shop/region 等配置时抛 ConnectorConfigError。"""

    @abstractmethod
    def _auth_headers(self) -> Dict[str, str]:
        """缺凭证时抛 ConnectorConfigError。"""

    @abstractmethod
    def _ping(self) -> bool: ...

    def _parse_rate_limit_headers(self, headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
        return None

    def _refresh_tokens(self) -> bool:
        return False

    @abstractmethod
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]: ...

    @abstractmethod
    def get_product(self, external_id: str) -> Optional[PlatformProduct]: ...

    @abstractmethod
    def create_product(self, product: PlatformProduct) -> Optional[str]: ...

    @abstractmethod
    def update_product(self, external_id: str, product: PlatformProduct) -> bool: ...

    @abstractmethod
    def delete_product(self, external_id: str) -> bool: ...

    @abstractmethod
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]: ...

    @abstractmethod
    def get_order(self, external_id: str) -> Optional[PlatformOrder]: ...

    @abstractmethod
    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool: ...

    @abstractmethod
    def _update_inventory(self, update: InventoryUpdate) -> bool: ...

    @abstractmethod
    def get_categories(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_category_attributes(self, category_id: str) -> Dict[str, Any]: ...


    # ---------- HTTP ----------
    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        base_url: Optional[str] = None,
        auth: Any = None,
        authenticate: bool = True,
        allow_refresh: bool = True,
        op: Optional[str] = None,
    ) -> ApiResult:
        self._require_connection()
        method = method.upper()
        op = op or f"{method} {path}"

        # 1) 配置错误：发请求前就失败
        try:
            if path.startswith(("http://", "https://")):
                url = path
            else:
                url = (base_url or self._base_url()).rstrip("/") + "/" + path.lstrip("/")
            req_headers = {"Accept": "application/json"}
            if authenticate:
                req_headers.update(self._auth_headers())
            req_headers.update(headers or {})
        except ConnectorConfigError as e:
            return self._fail(op, f"configuration error: {e}")

        attempt = 0
        refreshed = False
        while True:
            attempt += 1
            if self._limiter is not None:
                self._limiter.acquire(sleep=self._sleep)

            started = time.perf_counter()
            try:
                resp = self._session.request(
                    method, url, params=params, json=json, data=data,
                    headers=req_headers, auth=auth, timeout=self.timeout,
                )
            except requests.RequestException as e:
                if method == "GET" and attempt <= self.max_retries:
                    delay = calc_backoff_seconds(attempt, self.backoff_ms)
                    logger.warning("marketplace.http.retry platform=%s op=%s reason=%s attempt=%s sleep=%.2f",
                                   self.platform.value, op, type(e).__name__, attempt, delay)
                    self._sleep(delay)
                    continue
                return self._fail(op, f"request error: {e}")

            latency_ms = int((time.perf_counter() - started) * 1000)
            status = resp.status_code
            self._observe_rate_limit(resp.headers, status)

            # 2) 401：能刷新就刷新一次再重放
            if status == 401 and authenticate and allow_refresh and not refreshed and self.supports_token_refresh:
                refreshed = True
                logger.info("marketplace.http.unauthorized platform=%s op=%s action=refresh_token",
                            self.platform.value, op)
                if self._refresh_tokens():
                    try:
                        req_headers.update(self._auth_headers())
                    except ConnectorConfigError as e:
                        return self._fail(op, f"configuration error: {e}", status=status)
                    continue

            # 3) 429 / 5xx：退避重试
            retryable = status == 429 or (status >= 500 and method == "GET")
            if retryable and attempt <= self.max_retries:
                delay = calc_backoff_seconds(attempt, self.backoff_ms, retry_after=resp.headers.get("Retry-After"))
                logger.warning("marketplace.http.retry platform=%s op=%s status=%s attempt=%s sleep=%.2f",
                               self.platform.value, op, status, attempt, delay)
                self._sleep(delay)
                continue

            body = self._parse_body(resp)
            if status >= 400:
                snippet = (resp.text or "")[:300]
                logger.warning("marketplace.http.error platform=%s op=%s status=%s latency_ms=%s body=%s",
                               self.platform.value, op, status, latency_ms, snippet)
                return self._fail(op, f"HTTP {status}: {snippet}", status=status,
                                  data=None if body is _INVALID_JSON else body, headers=resp.headers, log=False)

            if body is _INVALID_JSON:
                return self._fail(op, f"non-JSON response (status={status}): {(resp.text or '')[:200]}",
                                  status=status, headers=resp.headers)

            logger.debug("marketplace.http.ok platform=%s op=%s status=%s latency_ms=%s",
                         self.platform.value, op, status, latency_ms)
            return ApiResult.success(body, status=status, headers=resp.headers)


    # ---------- Internals ----------
    @staticmethod
    def _parse_body(resp: requests.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return _INVALID_JSON

    def _observe_rate_limit(self, headers: Mapping[str, str], status: Optional[int] = None) -> None:
        try:
            parsed = self._parse_rate_limit_headers(headers)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            self._rate_limit = parsed

    def _fail(self, op: str, message: str, *, status: Optional[int] = None, data: Any = None,
              headers: Optional[Mapping[str, str]] = None, log: bool = True) -> ApiResult:
        self._last_error = message
        if log:
            logger.warning("marketplace.call.failed platform=%s op=%s error=%s", self.platform.value, op, message)
        return ApiResult.failure(message, status=status, data=data, headers=headers)

    def _error(self, message: str) -> str:
        """非 HTTP 的业务失败（如找不到 fulfillment order），记为最近错误。"""
        self._last_error = message
        logger.warning("marketplace.op.failed platform=%s error=%s", self.platform.value, message)
        return message

    def _build_page(self, raws: Iterable[Any], transform: Callable[[Mapping[str, Any]], Any],
                    next_cursor: Optional[str] = None, *, kind: str) -> Page:
        """逐条转换；非对象或转换抛错的记录进 page.rejected，其它条照常返回。"""
        items: List[Any] = []
        rejected: List[Dict[str, Any]] = []
        for index, raw in enumerate(raws):
            if not isinstance(raw, Mapping):
                rejected.append({"index": index, "external_id": None,
                                 "error": f"{kind} record is not an object ({type(raw).__name__})"})
                continue
            try:
                items.append(transform(raw))
            except Exception as e:
                rejected.append({"index": index, "external_id": _raw_id(raw), "error": f"{kind} transform failed: {e}"})
        for r in rejected:
            logger.warning("marketplace.record.rejected platform=%s kind=%s index=%s external_id=%s error=%s",
                           self.platform.value, kind, r["index"], r["external_id"], r["error"])
        return Page(items, next_cursor, rejected=rejected)

    def _page_size(self, limit: Optional[int]) -> int:
        size = to_int(limit, self.max_page_size) or self.max_page_size
        return max(1, min(size, self.max_page_size))

    def _apply_token_response(self, result: ApiResult, *, default_ttl: Optional[int] = None) -> bool:
        """OAuth token 端点的标准响应 → 写回 connection（持久化由 Manager 负责）。"""
        token = result.get("access_token")
        if not result.ok or not token:
            if result.ok:
                self._error("token response missing access_token")
            return False
        expires_in = to_int(result.get("expires_in"), default_ttl)
        self.connection.update_tokens(token, expires_in=expires_in, refresh_token=result.get("refresh_token"))
        self.tokens_refreshed = True
        logger.info("marketplace.token.refreshed platform=%s connection=%s expires_in=%s",
                    self.platform.value, getattr(self.connection, "id", None), expires_in)
        return True

    def _require(self, value: Any, what: str) -> Any:
        if value is None or value == "":
            raise ConnectorConfigError(f"{self.platform.label}: missing {what}")
        return value

    def _target_quantity(self, update: InventoryUpdate, current: Optional[int]) -> Optional[int]:
        """只支持“绝对值写入”的平台：adjust 需要先读当前库存。读不到就放弃。"""
        if not update.is_adjustment:
            return update.apply(0)
        if current is None:
            self._error(f"cannot read current inventory for {update.sku or update.external_id}")
            return None
        return update.apply(current)


_INVALID_JSON = object()


def _raw_id(raw: Mapping[str, Any]) -> Optional[str]:
    for key in ("id", "listing_id", "receipt_id", "orderId", "AmazonOrderId", "purchaseOrderId", "sku"):
        val = raw.get(key)
        if val not in (None, ""):
            return str(val)
    return None
