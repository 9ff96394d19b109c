"""
API endpoints for transcoding job management.
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Response, status

from vidstream.app.dependencies import ServiceContainer, get_services
from vidstream.app.errors import InputError, StorageError
from vidstream.app.models import TranscodingStatus
from vidstream.app.schemas import (
    CancelResponse, JobStatusResponse, OutputFileResponse, TranscodingJobRequest, TranscodingJobResponse
)
from vidstream.app.services.manifest_service import DASH_CONTENT_TYPE, HLS_CONTENT_TYPE
from vidstream.app.services.transcoding_scheduler import CancelResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transcoding", tags=["transcoding"])


async def _get_job_or_404(services: ServiceContainer, job_id: str):
    job = await services.scheduler.get_status(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transcoding job not found"
        )
    return job


@router.post("/jobs", status_code=status.HTTP_201_CREATED, response_model=TranscodingJobResponse)
async def create_transcoding_job(
    request: TranscodingJobRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Submit a new transcoding job."""
    try:
        job = await services.scheduler.submit(
            video_id=request.video_id,
            owner_id=request.owner_id,
            input_location=request.input_location,
            requested_qualities=request.qualities,
            formats=[f.value for f in request.formats] if request.formats is not None else None,
            priority=request.priority.value,
            max_attempts=request.max_attempts,
        )
    except InputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return TranscodingJobResponse.from_job(job)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_transcoding_job_status(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    """Get status, progress and last error of a job."""
    result = await services.scheduler.get_job_status(job_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transcoding job not found"
        )
    return JobStatusResponse(**result)


@router.get("/jobs/{job_id}/details", response_model=TranscodingJobResponse)
async def get_transcoding_job(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    job = await _get_job_or_404(services, job_id)
    return TranscodingJobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_transcoding_job(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    """Cancel a queued or running job."""
    result = await services.scheduler.cancel(job_id)
    if result == CancelResult.not_found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transcoding job not found"
        )
    return CancelResponse(job_id=job_id, result=result.value)


@router.get("/jobs/{job_id}/outputs", response_model=List[OutputFileResponse])
async def list_job_outputs(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    await _get_job_or_404(services, job_id)
    outputs = await services.repository.list_outputs(job_id)
    return [OutputFileResponse.model_validate(f) for f in outputs]


async def _completed_outputs(services: ServiceContainer, job_id: str, fmt: str):
    job = await _get_job_or_404(services, job_id)
    outputs = [f for f in job.output_files if f.format.value == fmt]
    if job.status != TranscodingStatus.completed or not outputs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {fmt.upper()} renditions available for this job"
        )
    return job, outputs


@router.get("/jobs/{job_id}/master.m3u8")
async def get_hls_master_playlist(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    job, outputs = await _completed_outputs(services, job_id, "hls")
    return Response(content=services.manifests.build_hls_master(job, outputs), media_type=HLS_CONTENT_TYPE)


@router.get("/jobs/{job_id}/manifest.mpd")
async def get_dash_manifest(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    job, outputs = await _completed_outputs(services, job_id, "dash")
    return Response(content=services.manifests.build_dash(job, outputs), media_type=DASH_CONTENT_TYPE)


@router.get("/queue/stats")
async def get_queue_stats(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Lane lengths, scheduled retries and per-status job counts."""
    return await services.scheduler.get_queue_stats()


@router.get("/profiles")
async def list_quality_profiles(services: ServiceContainer = Depends(get_services)) -> List[Dict[str, Any]]:
    return [
        {
            "name": p.name,
            "width": p.width,
            "height": p.height,
            "bitrate": p.bitrate,
            "codec": p.codec,
        }
        for p in services.catalog.all_profiles()
    ]
