# 导出入口，给脚本/临时建表用

from .session import engine, SessionLocal, get_db, dispose_engine
from marketplace_hub.db.model import *  # 确保把所有模型加载进 Base.metadata
from .base import Base


"""
    开发期在空库快速建表：
        python -c "from marketplace_hub.db import create_all; create_all()"
    生产环境禁用；请使用 `alembic upgrade head`
"""
def create_all() -> None:
    Base.metadata.create_all(bind=engine)
