"""
领域映射用的纯函数：
  - pick(): 按优先级尝试多个候选字段（支持点路径），第一个非 None 的生效
  - to_decimal / to_int / parse_datetime: 宽松转换，失败返回 None，不抛异常
"""
from __future__ import annotations
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional


_MISSING = object()


def _walk(data: Any, path: str) -> Any:
    cur = data
    for part in path.split("."):
        if isinstance(cur, Mapping):
            if part not in cur:
                return _MISSING
            cur = cur[part]
        elif isinstance(cur, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(cur):
                return _MISSING
            cur = cur[idx]
        else:
            return _MISSING
    return cur


def pick(data: Any, *paths: str, default: Any = None) -> Any:
    """
    pick(raw, "total", "total_price", "pricingSummary.total.value")
    依次尝试，跳过缺失或为 None 的；全部落空返回 default。
    """
    if data is None:
        return default
    for path in paths:
        val = _walk(data, path)
        if val is not _MISSING and val is not None:
            return val
    return default


def to_decimal(val, q: str = "0.01") -> Optional[Decimal]:
    if val is None or isinstance(val, bool):
        return None
    s = str(val).strip()
    if not s:
        return None
    try:
        d = Decimal(s)
        return d.quantize(Decimal(q))
    except (InvalidOperation, ValueError, TypeError):
        return None


def to_money(val, default: str = "0") -> Decimal:
    """金额：缺失记 0，负数按 0（平台退款另有记录）。"""
    d = to_decimal(val)
    if d is None or d < 0:
        return Decimal(default).quantize(Decimal("0.01"))
    return d


def money_from_minor(amount, divisor) -> Optional[Decimal]:
    """Etsy 风格的 {amount: 1999, divisor: 100} → Decimal("19.99")"""
    a = to_decimal(amount, q="1")
    d = to_decimal(divisor, q="1")
    if a is None:
        return None
    if not d:
        d = Decimal(100)
    return (a / d).quantize(Decimal("0.01"))


def to_float(val, ndigits: Optional[int] = None) -> Optional[float]:
    if val is None:
        return None
    s = str(val).strip()
    if not s:
        return None
    try:
        f = float(s)
        if ndigits is not None:
            f = round(f, ndigits)
        return f
    except (ValueError, TypeError):
        return None


def to_int(val, default: Optional[int] = None) -> Optional[int]:
    f = to_float(val)
    return int(f) if f is not None else default


def to_str(val) -> Optional[str]:
    if val is None:
        return None
    return str(val)


def parse_datetime(val) -> Optional[datetime]:
    """ISO 字符串 / epoch 秒 / datetime / date 都接受；epoch 按 UTC。"""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val
    if isinstance(val, date):
        return datetime(val.year, val.month, val.day, tzinfo=timezone.utc)
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        try:
            return datetime.fromtimestamp(float(val), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    s = str(val).strip()
    if s.isdigit():
        return parse_datetime(int(s))
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        pass
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%a, %d %b %Y %H:%M:%S %z", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def as_list(val) -> List[Any]:
    if val is None:
        return []
    if isinstance(val, (list, tuple)):
        return list(val)
    return [val]


def as_dict(val) -> Dict[str, Any]:
    if isinstance(val, Mapping):
        return dict(val)
    return {}
