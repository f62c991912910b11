"""
Dead-letter router.

Operator surface for quarantined jobs: list, inspect, retry now,
purge one, purge by age, and run a recovery batch.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from job_engine.engine.entities import JobType
from job_engine.engine.errors import DeadLetterNotFoundError, InvalidOperationError

from ..schemas.dead_letter import (
    DeadLetterDeleteResponse,
    DeadLetterListResponse,
    DeadLetterProcessRequest,
    DeadLetterProcessResponse,
    DeadLetterPurgeRequest,
    DeadLetterPurgeResponse,
    DeadLetterResponse,
    RecoveryResponse,
)
from .._engine_state import get_engine_service


router = APIRouter()


@router.get("", response_model=DeadLetterListResponse)
def list_dead_letters(
    job_type: Optional[JobType] = Query(default=None, description="Filter by job type"),
    tenant_id: Optional[str] = Query(default=None, description="Filter by tenant"),
    limit: int = Query(default=50, ge=1, le=500, description="Maximum entries to return"),
    offset: int = Query(default=0, ge=0, description="Entries to skip"),
):
    """
    List dead-letter entries, most recently quarantined first.
    """
    service = get_engine_service()

    try:
        entries = service.list_dead_lettered(
            job_type=job_type, tenant_id=tenant_id, limit=limit, offset=offset
        )
        stats = service.dead_letter.get_stats()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list dead letters: {str(e)}")

    return DeadLetterListResponse(
        entries=[DeadLetterResponse.from_entry(entry) for entry in entries],
        total=len(entries),
        stats=stats,
    )


@router.get("/{dlq_id}", response_model=DeadLetterResponse)
def get_dead_letter(dlq_id: str):
    service = get_engine_service()

    try:
        entry = service.get_dead_letter(dlq_id)
    except DeadLetterNotFoundError:
        raise HTTPException(status_code=404, detail=f"Dead-letter entry not found: {dlq_id}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get dead letter: {str(e)}")

    return DeadLetterResponse.from_entry(entry)


@router.post("/{dlq_id}/retry", response_model=RecoveryResponse)
def retry_dead_letter(dlq_id: str):
    """
    Run recovery for one entry now.

    Re-enables automatic recovery for an exhausted entry. The handler runs
    inline, so this blocks for the handler's duration.
    """
    service = get_engine_service()

    try:
        outcome = service.retry_dead_letter(dlq_id)
    except DeadLetterNotFoundError:
        raise HTTPException(status_code=404, detail=f"Dead-letter entry not found: {dlq_id}")
    except InvalidOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to retry dead letter: {str(e)}")

    return RecoveryResponse(**outcome.to_dict())


@router.delete("/{dlq_id}", response_model=DeadLetterDeleteResponse)
def purge_dead_letter(dlq_id: str):
    """
    Permanently remove one entry.
    """
    service = get_engine_service()

    try:
        service.purge_dead_letter(dlq_id)
    except DeadLetterNotFoundError:
        raise HTTPException(status_code=404, detail=f"Dead-letter entry not found: {dlq_id}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to purge dead letter: {str(e)}")

    return DeadLetterDeleteResponse(
        dlq_id=dlq_id,
        success=True,
        message="Dead-letter entry purged",
    )


@router.post("/purge", response_model=DeadLetterPurgeResponse)
def purge_dead_letters(request: DeadLetterPurgeRequest = DeadLetterPurgeRequest()):
    """
    Purge entries enqueued before older_than (default: retention horizon).
    """
    service = get_engine_service()

    try:
        result = service.purge_dead_letters(older_than=request.older_than)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to purge dead letters: {str(e)}")

    return DeadLetterPurgeResponse(**result)


@router.post("/process", response_model=DeadLetterProcessResponse)
def process_dead_letters(request: DeadLetterProcessRequest = DeadLetterProcessRequest()):
    """
    Run one automatic-recovery batch now.

    Returns zero counts if another batch is already running.
    """
    service = get_engine_service()

    try:
        result = service.process_dead_letters(batch_size=request.batch_size)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to process dead letters: {str(e)}")

    return DeadLetterProcessResponse(**result)
