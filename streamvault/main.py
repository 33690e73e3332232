"""FastAPI 应用入口，注册路由、媒体文件服务、生命周期管理。"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from loguru import logger

from streamvault.config import settings
from streamvault.routers import archives, conversions, downloads, sse, subscriptions
from streamvault.workers.background import Runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：启动时组装运行时并启动后台工作者，关闭时等待其退出。"""
    logger.info("启动 StreamVault 服务...")

    runtime = getattr(app.state, "runtime", None)
    owned = runtime is None
    if owned:
        runtime = Runtime(settings)
        app.state.runtime = runtime
    runtime.start()
    logger.info(f"数据库: {runtime.config.database_path}")
    logger.info(f"服务启动成功，访问 http://{settings.app_host}:{settings.app_port}")

    yield

    logger.info("服务关闭中...")
    await runtime.stop()
    if owned:
        del app.state.runtime


app = FastAPI(
    title="StreamVault",
    description="直播与影片下载、转码、归档服务",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS（开发模式允许所有来源）
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册 API 路由
app.include_router(downloads.router)
app.include_router(conversions.router)
app.include_router(archives.router)
app.include_router(subscriptions.router)
app.include_router(sse.router)

# 挂载媒体文件目录
for prefix, directory in (
    (settings.download_url_prefix, settings.download_path),
    (settings.converted_url_prefix, settings.converted_path),
    (settings.archive_url_prefix, settings.archive_path),
    (settings.thumbnail_url_prefix, settings.thumbnail_path),
):
    mount_path = prefix.rstrip("/")
    app.mount(mount_path, StaticFiles(directory=str(directory), check_dir=False), name=mount_path.strip("/"))


@app.get("/health")
async def health() -> dict:
    """健康检查端点。"""
    return {"status": "ok", "version": "1.0.0"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("streamvault.main:app", host=settings.app_host, port=settings.app_port, reload=settings.debug)
