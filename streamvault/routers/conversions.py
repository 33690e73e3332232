"""转码任务 API 路由。"""

from fastapi import APIRouter, Depends, HTTPException

from streamvault.models.job import ConversionJob
from streamvault.routers.deps import get_runtime
from streamvault.schemas.job import ConversionJobResponse
from streamvault.workers.background import Runtime

router = APIRouter(prefix="/api/conversions", tags=["conversions"])


@router.get("", response_model=list[ConversionJobResponse])
async def list_conversions(runtime: Runtime = Depends(get_runtime)) -> list[ConversionJobResponse]:
    """列出排队中与转码中的任务。"""
    return [ConversionJobResponse.model_validate(job) for job in runtime.conversions.get_active_conversions()]


@router.post("/{job_id}/cancel", response_model=ConversionJobResponse)
async def cancel_conversion(job_id: str, runtime: Runtime = Depends(get_runtime)) -> ConversionJobResponse:
    job = runtime.store.get(ConversionJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="转码任务不存在")
    if not runtime.conversions.cancel_conversion(job_id):
        raise HTTPException(status_code=409, detail="转码任务未在运行")
    return ConversionJobResponse.model_validate(job)
