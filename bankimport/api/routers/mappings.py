"""
Saved column mapping endpoints and header auto-detection.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import Engine

from bankimport.api.dependencies import get_current_user_id, get_db_engine, to_http_exception
from bankimport.api.schemas.shared import (
    AutoDetectRequest,
    AutoDetectResponse,
    DeleteResponse,
    SavedMappingListResponse,
    SavedMappingRecord,
    SavedMappingResponse,
    SaveMappingRequest,
)
from bankimport.domain.imports.mapping import auto_detect_mapping, validate_mapping
from bankimport.domain.imports.saved_mappings import delete_mapping, list_mappings, mark_mapping_used, save_mapping

router = APIRouter(prefix="/import-mappings", tags=["import-mappings"])


@router.get("", response_model=SavedMappingListResponse)
async def list_saved_mappings(
    headers: Optional[List[str]] = Query(None),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    """
    List saved mappings.

    Parameters:
    - headers: Repeat once per column of the file being imported to rank
      mappings by how well they still fit
    """
    try:
        mappings = list_mappings(engine, user_id, headers=headers)
        return SavedMappingListResponse(success=True, mappings=[SavedMappingRecord(**item) for item in mappings])
    except Exception as e:
        raise to_http_exception(e, "list import mappings")


@router.post("", response_model=SavedMappingResponse)
async def create_saved_mapping(
    request: SaveMappingRequest,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        saved = save_mapping(engine, user_id=user_id, **request.model_dump())
        return SavedMappingResponse(success=True, mapping=SavedMappingRecord(**saved))
    except Exception as e:
        raise to_http_exception(e, "save import mapping")


@router.post("/auto-detect", response_model=AutoDetectResponse)
async def auto_detect(request: AutoDetectRequest, user_id: str = Depends(get_current_user_id)):
    """Suggest a column mapping for a header row."""
    try:
        mapping = auto_detect_mapping(request.headers)
        validation = validate_mapping(mapping, request.headers)
        return AutoDetectResponse(
            success=True,
            column_mapping=mapping.to_dict(),
            valid=validation.valid,
            errors=validation.errors,
            warnings=validation.warnings,
        )
    except Exception as e:
        raise to_http_exception(e, "detect column mapping")


@router.post("/{mapping_id}/used", response_model=SavedMappingResponse)
async def saved_mapping_used(
    mapping_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        return SavedMappingResponse(success=True, mapping=SavedMappingRecord(**mark_mapping_used(engine, mapping_id, user_id)))
    except Exception as e:
        raise to_http_exception(e, "update import mapping")


@router.delete("/{mapping_id}", response_model=DeleteResponse)
async def delete_saved_mapping(
    mapping_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_db_engine),
):
    try:
        delete_mapping(engine, mapping_id, user_id)
        return DeleteResponse(success=True, message=f"Import mapping {mapping_id} deleted")
    except Exception as e:
        raise to_http_exception(e, "delete import mapping")
