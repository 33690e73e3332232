"""对外访问 URL 拼接。"""

from pathlib import Path
from typing import Optional

from streamvault.config import Settings
from streamvault.models.archive import ArchivedVideo


class UrlBuilder:
    """把配置中的 URL 前缀与文件名拼接为可访问地址。"""

    def __init__(self, config: Settings):
        self.config = config

    @staticmethod
    def _join(prefix: str, file_name: Optional[str]) -> str:
        if not file_name:
            return ""
        return prefix.rstrip("/") + "/" + Path(file_name).name

    def thumbnail_url(self, file_name: Optional[str]) -> str:
        return self._join(self.config.thumbnail_url_prefix, file_name)

    def download_url(self, file_name: Optional[str]) -> str:
        return self._join(self.config.download_url_prefix, file_name)

    def converted_url(self, file_name: Optional[str]) -> str:
        return self._join(self.config.converted_url_prefix, file_name)

    def archive_url(self, file_name: Optional[str]) -> str:
        return self._join(self.config.archive_url_prefix, file_name)

    def video_url(self, video: ArchivedVideo) -> str:
        """归档影片的播放地址。"""
        return self.archive_url(video.file_name or video.file_path)
