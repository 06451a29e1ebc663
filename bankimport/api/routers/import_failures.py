"""
Review endpoints for rows that failed or were skipped during an import.
"""
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.engine import Engine

from bankimport.api.dependencies import get_current_user_id, get_db_engine, to_http_exception
from bankimport.api.schemas.shared import (
    BulkFailureActionRequest,
    BulkFailureActionResponse,
    BulkFailureActionResult,
    FailureActionRequest,
    FailureStatsResponse,
    ImportFailureListResponse,
    ImportFailureRecord,
    ImportFailureResponse,
    PromoteFailureRequest,
    PromoteFailureResponse,
)
from bankimport.domain.imports.failures import (
    apply_review_action,
    bulk_review_action,
    export_failures_csv,
    failure_stats,
    get_failure,
    list_failures,
    promote_failure,
)
from bankimport.domain.imports.jobs import require_import_job

router = APIRouter(prefix="/imports/{import_id}/failures", tags=["import-failures"])


class ReviewAction(str, Enum):
    review = "review"
    resolve = "resolve"
    ignore = "ignore"
    unmark = "unmark"


@router.get("", response_model=ImportFailureListResponse)
async def list_import_failures(
    import_id: str,
    status: Optional[str] = None,
    error_type: Optional[str] = None,
    search: Optional[str] = None,
    attempt: Optional[int] = Query(None, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """
    List failures of an import.

    Parameters:
    - status: pending, reviewed, resolved or ignored
    - error_type: e.g. validation_failed, parsing_error, duplicate
    - search: Case-insensitive text searched in the error message
    - attempt: Only failures of this processing run (all runs by default)
    """
    try:
        require_import_job(engine, import_id, user_id)
        failures, total = list_failures(
            engine,
            import_id,
            status=status,
            error_type=error_type,
            search=search,
            attempt=attempt,
            limit=limit,
            offset=offset,
        )
        return ImportFailureListResponse(
            success=True,
            failures=[ImportFailureRecord(**failure) for failure in failures],
            total_count=total,
            limit=limit,
            offset=offset,
        )
    except Exception as e:
        raise to_http_exception(e, "list import failures")


@router.get("/stats", response_model=FailureStatsResponse)
async def import_failure_stats(
    import_id: str,
    attempt: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        return FailureStatsResponse(success=True, **failure_stats(engine, import_id, attempt=attempt))
    except Exception as e:
        raise to_http_exception(e, "compute failure statistics")


@router.get("/export")
async def export_import_failures(
    import_id: str,
    status: Optional[str] = None,
    attempt: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        content = export_failures_csv(engine, import_id, status=status, attempt=attempt)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="import-{import_id}-failures.csv"'},
        )
    except Exception as e:
        raise to_http_exception(e, "export import failures")


@router.post("/bulk", response_model=BulkFailureActionResponse)
async def bulk_failure_action(
    import_id: str,
    request: BulkFailureActionRequest,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        results = bulk_review_action(
            engine, import_id, request.failure_ids, request.action, actor_id=user_id, note=request.note
        )
        return BulkFailureActionResponse(
            success=all(result["success"] for result in results),
            results=[BulkFailureActionResult(**result) for result in results],
        )
    except Exception as e:
        raise to_http_exception(e, "apply bulk failure action")


@router.get("/{failure_id}", response_model=ImportFailureResponse)
async def get_import_failure(
    import_id: str,
    failure_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        return ImportFailureResponse(success=True, failure=ImportFailureRecord(**get_failure(engine, import_id, failure_id)))
    except Exception as e:
        raise to_http_exception(e, "retrieve import failure")


@router.post("/{failure_id}/promote", response_model=PromoteFailureResponse)
async def promote_import_failure(
    import_id: str,
    failure_id: str,
    request: PromoteFailureRequest,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """Create a transaction from corrected values and resolve the failure."""
    try:
        require_import_job(engine, import_id, user_id)
        result = promote_failure(engine, import_id, failure_id, request.values, actor_id=user_id, note=request.note)
        return PromoteFailureResponse(
            success=True,
            transaction_id=result["transaction_id"],
            failure=ImportFailureRecord(**result["failure"]),
        )
    except Exception as e:
        raise to_http_exception(e, "promote import failure")


@router.post("/{failure_id}/{action}", response_model=ImportFailureResponse)
async def import_failure_action(
    import_id: str,
    failure_id: str,
    action: ReviewAction,
    request: Optional[FailureActionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        failure = apply_review_action(
            engine,
            import_id,
            failure_id,
            action.value,
            actor_id=user_id,
            note=request.note if request else None,
        )
        return ImportFailureResponse(success=True, failure=ImportFailureRecord(**failure))
    except Exception as e:
        raise to_http_exception(e, f"{action.value} import failure")
