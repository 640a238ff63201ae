"""
marketplace 集成层专用异常类型。
   - 传输层错误（非 2xx / 网络）不走异常，统一变成 ApiResult(ok=False)
   - 这里只放“配置 / 编程契约 / 连接状态”类错误
"""

class MarketplaceError(Exception):
    """Base for all marketplace integration errors."""

class ConnectorNotInitializedError(MarketplaceError):
    """A network operation was attempted before initialize(connection)."""

class ConnectorConfigError(MarketplaceError):
    """Missing credentials / shop domain / base URL; detected before any network call."""

class UnsupportedPlatformError(MarketplaceError):
    """Unknown platform value, or no connector registered for it."""

class ConnectionInactiveError(MarketplaceError):
    """The marketplace connection is not in 'active' status."""
