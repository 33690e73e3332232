"""直播订阅数据模型。"""

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from streamvault.models.job import new_id, utc_now


class Subscription(SQLModel, table=True):
    """订阅：定期检查某个频道是否开播，开播时自动下载。"""

    __tablename__ = "subscriptions"

    id: str = Field(default_factory=new_id, primary_key=True)
    url: str = Field(index=True, description="订阅地址")
    name: str = ""
    check_rate_minutes: int = Field(default=30, description="检查间隔（分钟）")
    resolution: str = "Best"
    last_checked_at: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None
    is_enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
