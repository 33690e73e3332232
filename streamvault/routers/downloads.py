"""下载任务 API 路由：创建、查询、停止、归档与删除。"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException

from streamvault.models.job import ARCHIVABLE_DOWNLOAD_STATUSES, DownloadJob
from streamvault.routers.deps import get_runtime
from streamvault.schemas.job import DownloadCreate, DownloadJobResponse
from streamvault.services.downloader import JobInFlightError
from streamvault.workers.background import Runtime

router = APIRouter(prefix="/api/downloads", tags=["downloads"])


def _to_response(runtime: Runtime, job: DownloadJob) -> DownloadJobResponse:
    response = DownloadJobResponse.model_validate(job)
    response.thumbnail_url = runtime.urls.thumbnail_url(job.thumbnail)
    response.download_url = runtime.urls.download_url(job.output_path)
    response.converted_url = runtime.urls.converted_url(job.converted_file_path)
    return response


def _get_or_404(runtime: Runtime, job_id: str) -> DownloadJob:
    job = runtime.downloads.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="下载任务不存在")
    return job


@router.post("", response_model=DownloadJobResponse, status_code=201)
async def create_download(body: DownloadCreate, runtime: Runtime = Depends(get_runtime)) -> DownloadJobResponse:
    """创建下载任务并立即返回，任务在后台执行，通过 SSE 获取进度。"""
    job = await runtime.downloads.start_download(body.url, body.resolution)
    return _to_response(runtime, job)


@router.get("", response_model=list[DownloadJobResponse])
async def list_downloads(
    view: Literal["active", "converted", "all"] = "active",
    runtime: Runtime = Depends(get_runtime),
) -> list[DownloadJobResponse]:
    """按视图列出下载任务：active（未转码完成）、converted（转码终态）、all。"""
    if view == "converted":
        jobs = runtime.downloads.get_converted_jobs()
    elif view == "all":
        jobs = runtime.downloads.get_all_jobs()
    else:
        jobs = runtime.downloads.get_active_jobs()
    return [_to_response(runtime, job) for job in jobs]


@router.get("/{job_id}", response_model=DownloadJobResponse)
async def get_download(job_id: str, runtime: Runtime = Depends(get_runtime)) -> DownloadJobResponse:
    return _to_response(runtime, _get_or_404(runtime, job_id))


@router.post("/{job_id}/stop", response_model=DownloadJobResponse)
async def stop_download(job_id: str, runtime: Runtime = Depends(get_runtime)) -> DownloadJobResponse:
    """请求停止正在运行的下载，已下载的部分仍会进入转码。"""
    job = _get_or_404(runtime, job_id)
    if not runtime.downloads.stop_download(job_id):
        raise HTTPException(status_code=409, detail="下载任务未在运行")
    return _to_response(runtime, job)


@router.post("/{job_id}/archive", response_model=DownloadJobResponse)
async def archive_download(job_id: str, runtime: Runtime = Depends(get_runtime)) -> DownloadJobResponse:
    """把处于终态的下载任务放入归档队列。"""
    job = _get_or_404(runtime, job_id)
    if job.status not in ARCHIVABLE_DOWNLOAD_STATUSES or runtime.downloads.is_running(job_id):
        raise HTTPException(status_code=409, detail=f"当前状态不可归档: {job.status.value}")
    runtime.archives.archive_job(job)
    return _to_response(runtime, job)


@router.delete("/{job_id}", status_code=204)
async def delete_download(job_id: str, runtime: Runtime = Depends(get_runtime)) -> None:
    """删除下载任务及其所有文件。"""
    try:
        deleted = runtime.downloads.delete_job(job_id)
    except JobInFlightError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="下载任务不存在")
