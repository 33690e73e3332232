"""归档影片 API 路由。"""

from fastapi import APIRouter, Depends, HTTPException

from streamvault.models.archive import ArchivedVideo
from streamvault.routers.deps import get_runtime
from streamvault.schemas.job import ArchivedVideoResponse
from streamvault.workers.background import Runtime

router = APIRouter(prefix="/api/archives", tags=["archives"])


def _to_response(runtime: Runtime, video: ArchivedVideo) -> ArchivedVideoResponse:
    response = ArchivedVideoResponse.model_validate(video)
    response.video_url = runtime.urls.video_url(video)
    response.thumbnail_url = runtime.urls.thumbnail_url(video.thumbnail)
    return response


@router.get("", response_model=list[ArchivedVideoResponse])
async def list_archives(runtime: Runtime = Depends(get_runtime)) -> list[ArchivedVideoResponse]:
    """按归档时间倒序列出归档影片。"""
    return [_to_response(runtime, video) for video in runtime.archives.get_archived_videos()]


@router.get("/{video_id}", response_model=ArchivedVideoResponse)
async def get_archive(video_id: str, runtime: Runtime = Depends(get_runtime)) -> ArchivedVideoResponse:
    video = runtime.archives.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="归档影片不存在")
    return _to_response(runtime, video)


@router.delete("/{video_id}", status_code=204)
async def delete_archive(video_id: str, runtime: Runtime = Depends(get_runtime)) -> None:
    """删除归档影片的文件、缩略图与记录。"""
    if not runtime.archives.delete_video(video_id):
        raise HTTPException(status_code=404, detail="归档影片不存在")
