# 聚合导入所有模型，供 Alembic 发现

from .marketplace import (
    StoreMarketplace,
    PlatformListing,
    PlatformOrderRecord,
    CONNECTION_STATUS_PENDING,
    CONNECTION_STATUS_ACTIVE,
    CONNECTION_STATUS_INACTIVE,
)

__all__ = [
    "StoreMarketplace", "PlatformListing", "PlatformOrderRecord",
    "CONNECTION_STATUS_PENDING", "CONNECTION_STATUS_ACTIVE", "CONNECTION_STATUS_INACTIVE",
]
