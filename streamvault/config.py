"""应用配置模块，使用 Pydantic Settings 管理环境变量。"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """全局应用配置，从 .env 文件或环境变量读取。"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # 应用配置
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    debug: bool = False

    # 数据存储根目录（以下相对目录均基于此目录）
    data_dir: str = "data"

    # 存储目录
    download_directory: str = "downloads"
    converted_directory: str = "converted"
    archive_directory: str = "archives"
    thumbnail_directory: str = "thumbnails"

    # 对外访问的 URL 前缀
    download_url_prefix: str = "/media/downloads/"
    converted_url_prefix: str = "/media/converted/"
    archive_url_prefix: str = "/media/archives/"
    thumbnail_url_prefix: str = "/media/thumbnails/"

    # 文件名模板，支持 {id} {fn} {ext} {index} 占位符
    download_filename_template: str = "{id}.%(ext)s"
    converted_filename_template: str = "{fn}.{ext}"
    thumbnail_filename_template: str = "{id}_thumb_{index}.jpg"

    # 外部工具路径
    ytdlp_path: str = "yt-dlp"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # 下载容器格式
    output_format: str = "mp4"

    # 转码参数
    conversion_output_format: str = "webm"
    video_codec: str = "libsvtav1"
    audio_codec: str = "libopus"
    video_crf: int = 30
    audio_bitrate: str = "128k"
    video_preset: str = "8"  # AV1 preset: 0-13，数值越大越快

    # VP9 专用参数（仅 video_codec 为 libvpx-vp9 时生效）
    vp9_quality: Optional[str] = None  # realtime / good / best
    vp9_speed: Optional[int] = None
    vp9_row_mt: Optional[int] = None
    vp9_tile_columns: Optional[int] = None

    # FFmpeg 进度输出间隔（秒）
    progress_stats_period: float = 0.5

    # 可直接播放、无需转码的扩展名（逗号分隔）
    playable_extensions: str = ".mp4,.webm,.mp3,.m4a,.aac,.ogg,.opus,.wav"

    # 旧版 JSON 元数据文件与数据库文件（均位于归档目录）
    metadata_file: str = "video-metadata.json"
    database_file: str = "videos.db"

    # 订阅轮询间隔（秒）
    subscription_tick_seconds: int = 60

    # 终止外部进程时等待退出的宽限时间（秒）
    process_kill_timeout: float = 10.0

    @property
    def data_path(self) -> Path:
        """返回数据根目录的 Path 对象。"""
        return Path(self.data_dir)

    @property
    def download_path(self) -> Path:
        return self.data_path / self.download_directory

    @property
    def converted_path(self) -> Path:
        return self.data_path / self.converted_directory

    @property
    def archive_path(self) -> Path:
        return self.data_path / self.archive_directory

    @property
    def thumbnail_path(self) -> Path:
        return self.data_path / self.thumbnail_directory

    @property
    def database_path(self) -> Path:
        """返回 SQLite 数据库文件路径。"""
        return self.archive_path / self.database_file

    @property
    def metadata_path(self) -> Path:
        """返回旧版 JSON 元数据文件路径。"""
        return self.archive_path / self.metadata_file

    @property
    def playable_extensions_list(self) -> list[str]:
        """将可播放扩展名字符串解析为小写列表。"""
        return [ext.strip().lower() for ext in self.playable_extensions.split(",") if ext.strip()]

    def ensure_directories(self) -> None:
        """创建所有存储目录。"""
        for path in (self.download_path, self.converted_path, self.archive_path, self.thumbnail_path):
            path.mkdir(parents=True, exist_ok=True)


def render_filename(template: str, **values) -> str:
    """
    用给定值替换文件名模板中的 {key} 占位符。

    未提供的占位符原样保留（例如 yt-dlp 自身的 %(ext)s）。
    """
    result = template
    for key, value in values.items():
        result = result.replace("{" + key + "}", str(value))
    return result


settings = Settings()
