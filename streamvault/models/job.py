"""任务数据模型，定义下载任务、转码任务及其状态枚举。"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def new_id() -> str:
    """生成新的记录 ID。"""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """返回带时区的当前 UTC 时间，所有持久化时间戳均使用它。"""
    return datetime.now(timezone.utc)


class DownloadStatus(str, Enum):
    """下载任务状态枚举。"""
    STARTING = "starting"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    CONVERTING = "converting"
    CONVERSION_COMPLETED = "conversion_completed"
    CONVERSION_FAILED = "conversion_failed"
    ARCHIVING = "archiving"
    ARCHIVED = "archived"
    ARCHIVING_FAILED = "archiving_failed"


class ConversionStatus(str, Enum):
    """转码任务状态枚举。"""
    QUEUED = "queued"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"


# 下载器仍在运行（或等待运行）的状态
RUNNING_DOWNLOAD_STATUSES = (
    DownloadStatus.STARTING,
    DownloadStatus.DOWNLOADING,
    DownloadStatus.PROCESSING,
)

# 任何流水线仍持有文件引用的状态
IN_FLIGHT_DOWNLOAD_STATUSES = RUNNING_DOWNLOAD_STATUSES + (
    DownloadStatus.CONVERTING,
    DownloadStatus.ARCHIVING,
)

# 允许发起归档的终态
ARCHIVABLE_DOWNLOAD_STATUSES = (
    DownloadStatus.COMPLETED,
    DownloadStatus.STOPPED,
    DownloadStatus.FAILED,
    DownloadStatus.CONVERSION_COMPLETED,
    DownloadStatus.CONVERSION_FAILED,
    DownloadStatus.ARCHIVING_FAILED,
)

ACTIVE_CONVERSION_STATUSES = (ConversionStatus.QUEUED, ConversionStatus.CONVERTING)


class DownloadJob(SQLModel, table=True):
    """下载任务数据模型。"""

    __tablename__ = "downloads"

    id: str = Field(default_factory=new_id, primary_key=True)
    url: str = Field(index=True, description="源地址")
    title: str = Field(default="Unknown", description="显示标题")
    resolution: str = Field(default="Best", description="请求的分辨率")

    status: DownloadStatus = Field(default=DownloadStatus.STARTING, index=True)
    progress: float = Field(default=0.0, description="下载进度（0-100）")
    speed: str = ""
    eta: str = ""
    fps: str = ""

    output_path: str = Field(default="", description="下载产出文件路径")
    converted_file_path: Optional[str] = Field(default=None, description="转码后文件路径")

    thumbnail: Optional[str] = Field(default=None, description="主缩略图文件名")
    thumbnails: list[str] = Field(default_factory=list, sa_column=Column(JSON))

    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now, index=True)
    error_message: Optional[str] = None


class ConversionJob(SQLModel, table=True):
    """转码任务数据模型，与下载任务一一对应。"""

    __tablename__ = "conversions"

    id: str = Field(default_factory=new_id, primary_key=True)
    source_path: str = ""
    output_path: str = ""
    title: str = "Unknown"
    original_url: str = ""
    download_job_id: str = Field(default="", index=True, description="来源下载任务 ID")

    status: ConversionStatus = Field(default=ConversionStatus.QUEUED, index=True)
    progress: float = 0.0
    speed: str = ""
    fps: str = ""
    eta: str = ""

    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    error_message: Optional[str] = None


def assign_thumbnails(record, thumbnails: Optional[list[str]]) -> None:
    """写入缩略图列表，并把第一张同步到主缩略图字段。空列表不覆盖已有值。"""
    if thumbnails:
        record.thumbnails = list(thumbnails)
        record.thumbnail = thumbnails[0]
