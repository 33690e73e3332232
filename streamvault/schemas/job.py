"""API 请求与响应 Schema，以及旧版归档 JSON 的解析结构。"""

import re
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from streamvault.models.archive import ArchivedVideo
from streamvault.models.job import ConversionStatus, DownloadStatus, new_id

# 旧版文件中的时间戳可能带 7 位小数，截断到微秒
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def check_http_url(v: str) -> str:
    """验证是否为 http(s) 地址。"""
    v = v.strip()
    if not v.lower().startswith(("http://", "https://")):
        raise ValueError("请提供有效的 http(s) 地址")
    return v


class DownloadCreate(BaseModel):
    """创建下载任务的请求 Schema。"""

    url: str
    resolution: str = "Best"

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return check_http_url(v)


class DownloadJobResponse(BaseModel):
    """下载任务响应 Schema。"""

    id: str
    url: str
    title: str
    resolution: str
    status: DownloadStatus
    progress: float
    speed: str
    eta: str
    fps: str
    output_path: str
    converted_file_path: Optional[str]
    thumbnail: Optional[str]
    thumbnails: list[str]
    thumbnail_url: str = ""
    download_url: str = ""
    converted_url: str = ""
    started_at: datetime
    updated_at: datetime
    error_message: Optional[str]

    model_config = {"from_attributes": True}


class ConversionJobResponse(BaseModel):
    """转码任务响应 Schema。"""

    id: str
    source_path: str
    output_path: str
    title: str
    original_url: str
    download_job_id: str
    status: ConversionStatus
    progress: float
    speed: str
    fps: str
    eta: str
    started_at: datetime
    updated_at: datetime
    error_message: Optional[str]

    model_config = {"from_attributes": True}


class ArchivedVideoResponse(BaseModel):
    """归档影片响应 Schema。"""

    id: str
    title: str
    original_url: str
    file_name: str
    file_size_bytes: int
    file_size_formatted: str
    duration: Optional[str]
    thumbnail: Optional[str]
    thumbnails: list[str]
    archived_at: datetime
    description: Optional[str]
    uploader: Optional[str]
    video_url: str = ""
    thumbnail_url: str = ""

    model_config = {"from_attributes": True}


class SubscriptionCreate(BaseModel):
    """创建订阅的请求 Schema。"""

    url: str
    name: str = ""
    check_rate_minutes: int = 30
    resolution: str = "Best"
    is_enabled: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return check_http_url(v)

    @field_validator("check_rate_minutes")
    @classmethod
    def validate_rate(cls, v: int) -> int:
        if v < 1:
            raise ValueError("检查间隔至少为 1 分钟")
        return v


class SubscriptionUpdate(BaseModel):
    """更新订阅的请求 Schema，未提供的字段保持不变。"""

    name: Optional[str] = None
    check_rate_minutes: Optional[int] = Field(default=None, ge=1)
    resolution: Optional[str] = None
    is_enabled: Optional[bool] = None

    @field_validator("name", "check_rate_minutes", "resolution", "is_enabled", mode="before")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("字段不能为 null，省略该字段即保持不变")
        return v


class SubscriptionResponse(BaseModel):
    """订阅响应 Schema。"""

    id: str
    url: str
    name: str
    check_rate_minutes: int
    resolution: str
    last_checked_at: Optional[datetime]
    last_triggered_at: Optional[datetime]
    is_enabled: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class LegacyArchivedVideo(BaseModel):
    """旧版 video-metadata.json 中的单条归档记录，兼容 PascalCase 与 snake_case 键名。"""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id, validation_alias=AliasChoices("id", "Id"))
    title: str = Field(default="", validation_alias=AliasChoices("title", "Title"))
    original_url: str = Field(default="", validation_alias=AliasChoices("original_url", "OriginalUrl"))
    file_path: str = Field(default="", validation_alias=AliasChoices("file_path", "FilePath"))
    file_name: str = Field(default="", validation_alias=AliasChoices("file_name", "FileName"))
    file_size_bytes: int = Field(default=0, validation_alias=AliasChoices("file_size_bytes", "FileSizeBytes"))
    duration: Optional[str] = Field(default=None, validation_alias=AliasChoices("duration", "Duration"))
    thumbnail: Optional[str] = Field(default=None, validation_alias=AliasChoices("thumbnail", "Thumbnail"))
    thumbnails: list[str] = Field(default_factory=list, validation_alias=AliasChoices("thumbnails", "Thumbnails"))
    archived_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("archived_at", "ArchivedAt"))
    description: Optional[str] = Field(default=None, validation_alias=AliasChoices("description", "Description"))
    uploader: Optional[str] = Field(default=None, validation_alias=AliasChoices("uploader", "Uploader"))

    @field_validator("archived_at", mode="before")
    @classmethod
    def trim_fraction(cls, v):
        if isinstance(v, str):
            return _FRACTION_RE.sub(r"\1", v)
        return v

    @field_validator("archived_at")
    @classmethod
    def assume_local_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        """旧版时间戳不带时区，按本地时间处理。"""
        if v is not None and v.tzinfo is None:
            return v.astimezone()
        return v

    @field_validator("thumbnails", mode="before")
    @classmethod
    def null_thumbnails(cls, v):
        return v or []

    def to_record(self) -> ArchivedVideo:
        """转换为数据库记录。"""
        video = ArchivedVideo(
            id=self.id,
            title=self.title,
            original_url=self.original_url,
            file_path=self.file_path,
            file_name=self.file_name or self.file_path.replace("\\", "/").rsplit("/", 1)[-1],
            file_size_bytes=self.file_size_bytes,
            duration=self.duration,
            thumbnail=self.thumbnail,
            thumbnails=list(self.thumbnails),
            description=self.description,
            uploader=self.uploader,
        )
        if self.archived_at is not None:
            video.archived_at = self.archived_at
        if video.thumbnails and not video.thumbnail:
            video.thumbnail = video.thumbnails[0]
        return video
