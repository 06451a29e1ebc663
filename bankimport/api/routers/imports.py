"""
Import job endpoints: upload, configure, preview, process, revert and row edits.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.engine import Engine

from bankimport.api.dependencies import get_current_user_id, get_db_engine, to_http_exception
from bankimport.api.schemas.shared import (
    ConfigureImportRequest,
    ConfigureImportResponse,
    DeleteResponse,
    ImportJobListResponse,
    ImportJobRecord,
    ImportJobResponse,
    ImportUploadResponse,
    PreviewResponse,
    PreviewRow,
    ProcessImportResponse,
    RowEditListResponse,
    RowEditRecord,
    RowEditRequest,
)
from bankimport.domain.imports.jobs import configure_import_job, list_import_jobs, require_import_job, revert_import_job
from bankimport.domain.imports.orchestrator import preview_import, process_import
from bankimport.domain.imports.row_edits import delete_row_edit, list_row_edits, save_row_edit
from bankimport.domain.imports.saved_mappings import get_mapping, mark_mapping_used, saved_column_mapping
from bankimport.domain.imports.uploads import start_import

router = APIRouter(prefix="/imports", tags=["imports"])


@router.post("", response_model=ImportUploadResponse)
async def upload_import_file(
    file: UploadFile = File(...),
    delimiter: Optional[str] = Form(None),
    quote_char: Optional[str] = Form(None),
    account_id: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """
    Upload a bank statement and create a pending import.

    Parameters:
    - file: Delimited statement export
    - delimiter: Column delimiter; detected from the content when omitted
    - quote_char: Quote character; an empty value disables quoting
    - account_id: Optional account the transactions belong to
    """
    try:
        content = await file.read()
        job = start_import(
            engine,
            user_id=user_id,
            content=content,
            filename=file.filename or "upload.csv",
            delimiter=delimiter,
            quote_char=quote_char,
            account_id=account_id,
        )
        metadata = job["metadata"]
        return ImportUploadResponse(
            success=True,
            job=ImportJobRecord(**job),
            detected_mapping=metadata.get("detected_mapping", {}),
            mapping_confidence=metadata.get("detection", {}).get("overall_confidence", 0.0),
            column_profiles=metadata.get("detection", {}).get("columns", []),
            suggested_date_format=metadata.get("suggested_date_format"),
            suggested_amount_format=metadata.get("suggested_amount_format"),
        )
    except Exception as e:
        raise to_http_exception(e, "upload import file")


@router.get("", response_model=ImportJobListResponse)
async def list_imports(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        jobs, total = list_import_jobs(engine, user_id, status=status, limit=limit, offset=offset)
        return ImportJobListResponse(
            success=True,
            imports=[ImportJobRecord(**job) for job in jobs],
            total_count=total,
            limit=limit,
            offset=offset,
        )
    except Exception as e:
        raise to_http_exception(e, "list imports")


@router.get("/{import_id}", response_model=ImportJobResponse)
async def get_import(
    import_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        return ImportJobResponse(success=True, job=ImportJobRecord(**require_import_job(engine, import_id, user_id)))
    except Exception as e:
        raise to_http_exception(e, "retrieve import")


@router.post("/{import_id}/configure", response_model=ConfigureImportResponse)
async def configure_import(
    import_id: str,
    request: ConfigureImportRequest,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """
    Set the column mapping and formats of an import.

    A saved mapping supplies the mapping and any format the request leaves
    out; an explicit ``column_mapping`` takes precedence over it.
    """
    try:
        job = require_import_job(engine, import_id, user_id)
        column_mapping = request.column_mapping
        formats = {
            "date_format": request.date_format,
            "amount_format": request.amount_format,
            "amount_sign_strategy": request.amount_sign_strategy,
            "currency": request.currency,
        }

        if request.saved_mapping_id:
            saved = get_mapping(engine, request.saved_mapping_id, user_id)
            if column_mapping is None:
                column_mapping = saved_column_mapping(saved)
            for key in formats:
                formats[key] = formats[key] or saved[key]
            mark_mapping_used(engine, saved["id"], user_id)

        if column_mapping is None:
            raise HTTPException(status_code=422, detail="Either column_mapping or saved_mapping_id is required")

        updated, warnings = configure_import_job(
            engine,
            job,
            column_mapping=column_mapping,
            account_id=request.account_id,
            **formats,
        )
        return ConfigureImportResponse(success=True, job=ImportJobRecord(**updated), warnings=warnings)
    except Exception as e:
        raise to_http_exception(e, "configure import")


@router.get("/{import_id}/preview", response_model=PreviewResponse)
async def preview_import_rows(
    import_id: str,
    rows: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """Dry-run the first rows through parsing and validation without saving anything."""
    try:
        results = preview_import(engine, import_id, user_id, rows=rows)
        return PreviewResponse(success=True, rows=[PreviewRow(**row) for row in results])
    except Exception as e:
        raise to_http_exception(e, "preview import")


@router.post("/{import_id}/process", response_model=ProcessImportResponse)
async def process_import_file(
    import_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        summary = process_import(engine, import_id, user_id)
        return ProcessImportResponse(success=True, **summary.to_dict())
    except Exception as e:
        raise to_http_exception(e, "process import")


@router.post("/{import_id}/revert", response_model=ImportJobResponse)
async def revert_import(
    import_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """Delete the transactions created by an import and mark it reverted."""
    try:
        job = require_import_job(engine, import_id, user_id)
        return ImportJobResponse(success=True, job=ImportJobRecord(**revert_import_job(engine, job)))
    except Exception as e:
        raise to_http_exception(e, "revert import")


@router.get("/{import_id}/rows", response_model=RowEditListResponse)
async def list_import_row_edits(
    import_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        return RowEditListResponse(
            success=True,
            edits=[RowEditRecord(**edit) for edit in list_row_edits(engine, import_id)],
        )
    except Exception as e:
        raise to_http_exception(e, "list row edits")


@router.put("/{import_id}/rows/{row_number}", response_model=RowEditRecord)
async def save_import_row_edit(
    import_id: str,
    row_number: int,
    request: RowEditRequest,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        return RowEditRecord(**save_row_edit(engine, import_id, row_number, request.data))
    except Exception as e:
        raise to_http_exception(e, "save row edit")


@router.delete("/{import_id}/rows/{row_number}", response_model=DeleteResponse)
async def delete_import_row_edit(
    import_id: str,
    row_number: int,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        require_import_job(engine, import_id, user_id)
        if not delete_row_edit(engine, import_id, row_number):
            raise HTTPException(status_code=404, detail=f"No edit for row {row_number}")
        return DeleteResponse(success=True, message=f"Edit for row {row_number} removed")
    except Exception as e:
        raise to_http_exception(e, "delete row edit")
