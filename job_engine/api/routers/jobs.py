"""
Jobs router.

Submission, query and cancellation of jobs.
Submission is idempotent by singleton_key: a duplicate while the first job
is pending or active returns the existing job with 200 instead of 201.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response

from job_engine.engine.entities import JobStatus, JobType
from job_engine.engine.errors import (
    InvalidJobTypeError,
    InvalidOperationError,
    JobNotFoundError,
    PayloadTooLargeError,
)

from ..schemas.jobs import (
    JobCancelResponse,
    JobListResponse,
    JobResponse,
    JobSubmitRequest,
    JobSubmitResponse,
)
from ..schemas.metrics import ExecutionMetricListResponse, ExecutionMetricResponse
from .._engine_state import get_engine_service


router = APIRouter()


@router.post("", response_model=JobSubmitResponse, status_code=201)
def submit_job(request: JobSubmitRequest, response: Response):
    """
    Submit a job for asynchronous processing.

    - 201: New job created
    - 200: Active job with the same singleton_key already exists
    - 413: Serialized payload exceeds the configured ceiling
    - 422: Unknown or unregistered job type
    """
    service = get_engine_service()

    try:
        job, created = service.submit_job(
            job_type=request.job_type,
            payload=request.payload,
            singleton_key=request.singleton_key,
            tenant_id=request.tenant_id,
            priority=request.priority,
        )
    except InvalidJobTypeError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PayloadTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except InvalidOperationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to submit job: {str(e)}")

    if not created:
        response.status_code = 200

    return JobSubmitResponse(job_id=job.job_id, created=created, status=job.status.value)


@router.get("", response_model=JobListResponse)
def list_jobs(
    status: Optional[JobStatus] = Query(default=None, description="Filter by status"),
    job_type: Optional[JobType] = Query(default=None, description="Filter by job type"),
    tenant_id: Optional[str] = Query(default=None, description="Filter by tenant"),
    limit: int = Query(default=50, ge=1, le=500, description="Maximum jobs to return"),
    offset: int = Query(default=0, ge=0, description="Jobs to skip"),
):
    """
    List jobs, newest first.
    """
    service = get_engine_service()

    try:
        jobs = service.list_jobs(
            status=status,
            job_type=job_type,
            tenant_id=tenant_id,
            limit=limit,
            offset=offset,
        )
        counts = service.queue_manager.get_status_counts()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list jobs: {str(e)}")

    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        total=len(jobs),
        status_counts=counts,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str):
    """
    Get a job by ID, including attempts and failure history.
    """
    service = get_engine_service()

    try:
        job = service.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get job: {str(e)}")

    return JobResponse.from_job(job)


@router.delete("/{job_id}", response_model=JobCancelResponse)
def cancel_job(job_id: str):
    """
    Cancel a pending job.

    Active jobs run to completion; terminal jobs cannot be cancelled (409).
    """
    service = get_engine_service()

    try:
        job = service.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except InvalidOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to cancel job: {str(e)}")

    return JobCancelResponse(
        job_id=job_id,
        success=True,
        message=f"Job cancelled successfully (status: {job.status.value})",
    )


@router.get("/{job_id}/metrics", response_model=ExecutionMetricListResponse)
def get_job_metrics(job_id: str):
    """
    Execution metrics recorded for a job, one per attempt outcome.
    """
    service = get_engine_service()

    try:
        metrics = service.list_job_metrics(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get job metrics: {str(e)}")

    return ExecutionMetricListResponse(
        job_id=job_id,
        metrics=[ExecutionMetricResponse.from_metric(m) for m in metrics],
    )
