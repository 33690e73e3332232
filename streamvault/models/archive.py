"""归档影片数据模型。"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from streamvault.models.job import new_id, utc_now

_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


class ArchivedVideo(SQLModel, table=True):
    """归档影片记录，创建后除删除外不再变更。"""

    __tablename__ = "archives"

    id: str = Field(default_factory=new_id, primary_key=True)
    title: str = ""
    original_url: str = ""
    file_path: str = ""
    file_name: str = ""
    file_size_bytes: int = 0
    duration: Optional[str] = None
    thumbnail: Optional[str] = None
    thumbnails: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    archived_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    description: Optional[str] = None
    uploader: Optional[str] = None

    @property
    def file_size_formatted(self) -> str:
        return format_file_size(self.file_size_bytes)


def format_file_size(size: int) -> str:
    """将字节数格式化为人类可读字符串，例如 1.5 MB。"""
    value = float(size)
    order = 0
    while value >= 1024 and order < len(_SIZE_UNITS) - 1:
        order += 1
        value /= 1024
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[order]}"
