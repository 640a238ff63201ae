# Alembic 驱动：连接串一律取 settings.DATABASE_URL，日志配置取 alembic.ini

from __future__ import annotations
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from marketplace_hub.core.config import settings
from marketplace_hub.db.base import Base
import marketplace_hub.db.model  # 导入全部模型，注册进 Base.metadata

config = context.config
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
if config.config_file_name:
    fileConfig(config.config_file_name)


def _configure(**kwargs) -> None:
    # Numeric 精度（价格 / 金额列）也要比对
    context.configure(target_metadata=Base.metadata, compare_type=True, **kwargs)


if context.is_offline_mode():
    _configure(url=settings.DATABASE_URL, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()
else:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section), prefix="sqlalchemy.", poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        # SQLite 没有 ALTER COLUMN，走 batch 模式
        _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
        with context.begin_transaction():
            context.run_migrations()
