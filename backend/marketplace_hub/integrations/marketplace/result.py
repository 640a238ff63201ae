from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .normalizers import pick


@dataclass
class ApiResult:
    """一次平台调用的结果：成功带 data，失败带 error；connector 据此分支，不靠异常。"""

    ok: bool
    status: Optional[int] = None
    data: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, data: Any = None, *, status: int = 200, headers: Optional[Mapping[str, str]] = None) -> "ApiResult":
        return cls(ok=True, status=status, data=data, headers=headers or {})

    @classmethod
    def failure(cls, error: str, *, status: Optional[int] = None, data: Any = None,
                headers: Optional[Mapping[str, str]] = None) -> "ApiResult":
        return cls(ok=False, status=status, data=data, headers=headers or {}, error=error)

    def get(self, *paths: str, default: Any = None) -> Any:
        """按点路径取 data 字段，例如 result.get("payload.Orders")。"""
        if not self.ok or self.data is None:
            return default
        return pick(self.data, *paths, default=default)

    def __bool__(self) -> bool:
        return self.ok
