"""数据库会话管理：按配置延迟创建引擎与会话工厂，并负责建表。"""

from __future__ import annotations

import logging
import time
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from stepmanager.config import get_settings
from stepmanager.infra.db.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    return create_engine(database_url, pool_pre_ping=True, future=True)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """返回全局配置对应的引擎单例。"""
    return build_engine(get_settings().database_url)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    return build_session_factory(get_engine())


def init_db(bind: Engine | None = None) -> None:
    """创建步骤状态、事件与工具版本表；表已存在时不做改动。"""
    target = bind or get_engine()
    started = time.perf_counter()
    log_extra = {"external_service": "database", "op": "create_all", "path": target.url.render_as_string(hide_password=True)}
    logger.info("db init started", extra={"event": "db.init.started", **log_extra})
    try:
        Base.metadata.create_all(bind=target)
    except Exception as exc:
        logger.exception(
            "db init failed",
            extra={
                "event": "db.init.failed",
                **log_extra,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise
    logger.info(
        "db init succeeded",
        extra={
            "event": "db.init.succeeded",
            **log_extra,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
