"""数据库模块，使用 SQLModel + SQLite 持久化下载、转码、归档与订阅记录。"""

import threading
from pathlib import Path
from typing import Optional, Type, TypeVar

from loguru import logger
from pydantic import TypeAdapter
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine, select

from streamvault.models.archive import ArchivedVideo
from streamvault.models.job import (
    ACTIVE_CONVERSION_STATUSES,
    ConversionJob,
    DownloadJob,
    DownloadStatus,
    utc_now,
)
from streamvault.models.subscription import Subscription
from streamvault.schemas.job import LegacyArchivedVideo

T = TypeVar("T", bound=SQLModel)

_CONVERTED_STATUSES = (DownloadStatus.CONVERSION_COMPLETED, DownloadStatus.CONVERSION_FAILED)


def get_engine(db_path: Path, echo: bool = False) -> Engine:
    """创建并返回 SQLite 数据库引擎。"""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite:///{db_path}"
    return create_engine(db_url, echo=echo, connect_args={"check_same_thread": False})


def init_db(engine: Engine) -> None:
    """初始化数据库，创建所有表和索引。"""
    SQLModel.metadata.create_all(engine)


class JobStore:
    """
    按实体类型分集合的记录存储。

    所有读写在内部加锁串行化，调用方无需额外同步。
    返回的对象与会话分离，调用方可自由修改后再次 upsert。
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._lock = threading.RLock()

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ── 通用操作 ────────────────────────────────────────────

    def get(self, model: Type[T], record_id: str) -> Optional[T]:
        with self._lock, self._session() as session:
            return session.get(model, record_id)

    def get_all(self, model: Type[T]) -> list[T]:
        return self.find(model)

    def find(self, model: Type[T], *conditions, order_by=None) -> list[T]:
        """
        按条件查询记录。

        参数：
            model: 实体类型
            conditions: SQLAlchemy 条件表达式，如 DownloadJob.status == ...
            order_by: 可选排序表达式

        返回：
            匹配的记录列表
        """
        statement = select(model)
        if conditions:
            statement = statement.where(*conditions)
        if order_by is not None:
            statement = statement.order_by(order_by)
        with self._lock, self._session() as session:
            return list(session.exec(statement).all())

    def count(self, model: Type[SQLModel]) -> int:
        with self._lock, self._session() as session:
            return session.exec(select(func.count()).select_from(model)).one()

    def upsert(self, record: T) -> T:
        """插入或更新记录，并写入服务端更新时间。"""
        if hasattr(record, "updated_at"):
            record.updated_at = utc_now()
        with self._lock, self._session() as session:
            session.merge(record)
            session.commit()
        return record

    def delete(self, model: Type[SQLModel], record_id: str) -> bool:
        with self._lock, self._session() as session:
            record = session.get(model, record_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    # ── 二级查询 ────────────────────────────────────────────

    def get_active_downloads(self) -> list[DownloadJob]:
        """尚未进入转码终态的下载任务。"""
        return self.find(
            DownloadJob,
            DownloadJob.status.not_in(_CONVERTED_STATUSES),
            order_by=DownloadJob.started_at,
        )

    def get_converted_downloads(self) -> list[DownloadJob]:
        return self.find(
            DownloadJob,
            DownloadJob.status.in_(_CONVERTED_STATUSES),
            order_by=DownloadJob.started_at,
        )

    def get_downloads_by_status(self, *statuses: DownloadStatus) -> list[DownloadJob]:
        return self.find(DownloadJob, DownloadJob.status.in_(statuses), order_by=DownloadJob.started_at)

    def get_active_conversions(self) -> list[ConversionJob]:
        return self.find(
            ConversionJob,
            ConversionJob.status.in_(ACTIVE_CONVERSION_STATUSES),
            order_by=ConversionJob.started_at,
        )

    def get_conversion_by_download_id(self, download_job_id: str) -> Optional[ConversionJob]:
        matches = self.find(ConversionJob, ConversionJob.download_job_id == download_job_id)
        return matches[0] if matches else None

    def get_enabled_subscriptions(self) -> list[Subscription]:
        return self.find(Subscription, Subscription.is_enabled == True)  # noqa: E712

    # ── 旧版数据迁移 ────────────────────────────────────────

    def migrate_legacy_archive(self, metadata_path: Path) -> int:
        """
        首次启动时把旧版 JSON 元数据导入归档集合。

        归档集合非空时直接跳过，因此重复调用是幂等的。
        只导入文件仍存在的记录，导入后把 JSON 文件重命名为 .backup。

        参数：
            metadata_path: 旧版 JSON 文件路径

        返回：
            导入的记录数
        """
        try:
            if self.count(ArchivedVideo) > 0:
                logger.info("归档集合已有数据，跳过旧版元数据迁移")
                return 0

            if not metadata_path.exists():
                return 0

            logger.info(f"开始从旧版 JSON 迁移归档记录: {metadata_path}")
            legacy = TypeAdapter(list[LegacyArchivedVideo]).validate_json(
                metadata_path.read_text(encoding="utf-8")
            )
            if not legacy:
                return 0

            existing = [item for item in legacy if item.file_path and Path(item.file_path).exists()]
            for item in existing:
                self.upsert(item.to_record())
            logger.info(f"已迁移 {len(existing)}/{len(legacy)} 条归档记录")

            backup_path = metadata_path.with_name(metadata_path.name + ".backup")
            metadata_path.rename(backup_path)
            logger.info(f"旧版元数据已备份到 {backup_path}")
            return len(existing)
        except Exception as e:
            logger.exception(f"旧版元数据迁移失败: {e}")
            return 0
