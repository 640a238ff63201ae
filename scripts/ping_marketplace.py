import json
import sys

from marketplace_hub.core.logging import configure_logging
from marketplace_hub.db.session import session_scope
from marketplace_hub.integrations.marketplace import PlatformConnectorManager
from marketplace_hub.repository.marketplace_repo import SqlMarketplaceStore, get_connection


if __name__ == "__main__":
    configure_logging()
    if len(sys.argv) != 2 or not sys.argv[1].isdigit():
        print("usage: python scripts/ping_marketplace.py <connection_id>")
        sys.exit(2)

    connection_id = int(sys.argv[1])
    with session_scope() as db:
        connection = get_connection(db, connection_id)
        if connection is None:
            print(f"connection {connection_id} not found")
            sys.exit(1)

        result = PlatformConnectorManager(SqlMarketplaceStore(db)).check_connection(connection)
        result["platform"] = connection.platform
        print(json.dumps(result, indent=2, default=str))
        sys.exit(0 if result["ok"] else 1)


# 运行
# export $(grep -v '^#' .env | xargs)   # 若你用 .env
# PYTHONPATH=backend python scripts/ping_marketplace.py 12



# ok=true 且 rate_limit.limit > 0 说明凭证、店铺标识、限流头都 OK
