# Celery 应用：只负责承载 marketplace 同步任务；何时触发由外部调度决定

from celery import Celery
from kombu import Exchange, Queue
from marketplace_hub.core.config import settings
from marketplace_hub.core.logging import configure_logging

configure_logging()


celery_app = Celery(
    "marketplace_hub",
    broker=settings.CELERY_BROKER_URL,          # 队列位置 (Redis)
    backend=settings.CELERY_RESULT_BACKEND,     # 结果存储 (Redis)
    include=[
        "marketplace_hub.orchestration.marketplace_sync.sync_task",
    ],
)


celery_app.conf.update(
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    # === 容错 ===
    worker_prefetch_multiplier=1,    # 一个 worker 一次只取一个任务，外部 API 慢 I/O
    task_acks_late=True,             # 执行完再确认，worker crash 后任务回队列
    broker_heartbeat=30,
    broker_pool_limit=10,
)


'''
队列拆分：
   - marketplace_io：调用外部平台 API 的同步任务（慢 I/O，受平台限流）
   - default：其余
'''
celery_app.conf.task_queues = (
    Queue("default", Exchange("default"), routing_key="default"),
    Queue("marketplace_io", Exchange("marketplace_io"), routing_key="marketplace_io"),
)

celery_app.conf.task_default_queue = "default"

celery_app.conf.task_routes = {
    "marketplace_hub.orchestration.marketplace_sync.sync_products": {"queue": "marketplace_io"},
    "marketplace_hub.orchestration.marketplace_sync.sync_orders": {"queue": "marketplace_io"},
    "marketplace_hub.orchestration.marketplace_sync.test_connection": {"queue": "marketplace_io"},
}
