# 进程级日志初始化（API / Celery worker / scripts 共用）
#   - 业务日志是 "event key=value" 风格，格式里只补时间 / 级别 / logger
#   - uvicorn 先于我们装好 handler：这种情况只调级别，不重复加 handler

import logging
import sys
from typing import Optional

from marketplace_hub.core.config import settings

LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"

# 第三方库的噪音上限
QUIET_LOGGERS = ("urllib3", "celery.utils.functional", "kombu")


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or settings.LOG_LEVEL).upper()
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(resolved)
    else:
        logging.basicConfig(level=resolved, format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
