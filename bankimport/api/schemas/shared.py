from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


MappingValue = Optional[Union[int, str]]


class ImportJobRecord(BaseModel):
    id: str
    user_id: str
    account_id: Optional[str] = None
    status: str
    original_filename: Optional[str] = None
    file_hash: Optional[str] = None
    delimiter: str
    quote_char: str
    headers: List[str] = Field(default_factory=list)
    column_mapping: Optional[Dict[str, Optional[int]]] = None
    date_format: Optional[str] = None
    amount_format: Optional[str] = None
    amount_sign_strategy: Optional[str] = None
    currency: Optional[str] = None
    total_rows: int = 0
    processed_rows: int = 0
    failed_rows: int = 0
    skipped_rows: int = 0
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class ImportUploadResponse(BaseModel):
    success: bool
    job: ImportJobRecord
    detected_mapping: Dict[str, Optional[int]]
    mapping_confidence: float = 0.0
    column_profiles: List[Dict[str, Any]] = Field(default_factory=list)
    suggested_date_format: Optional[str] = None
    suggested_amount_format: Optional[str] = None


class ImportJobResponse(BaseModel):
    success: bool
    job: ImportJobRecord


class ImportJobListResponse(BaseModel):
    success: bool
    imports: List[ImportJobRecord]
    total_count: int
    limit: int
    offset: int


class ConfigureImportRequest(BaseModel):
    column_mapping: Optional[Dict[str, MappingValue]] = None
    saved_mapping_id: Optional[str] = None
    date_format: Optional[str] = None
    amount_format: Optional[str] = None
    amount_sign_strategy: Optional[Literal["signed_amount", "income_positive", "expense_positive"]] = None
    currency: Optional[str] = None
    account_id: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value else value


class ConfigureImportResponse(BaseModel):
    success: bool
    job: ImportJobRecord
    warnings: List[str] = Field(default_factory=list)


class PreviewRow(BaseModel):
    row_number: int
    status: str
    data: Optional[Dict[str, Any]] = None
    error_type: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class PreviewResponse(BaseModel):
    success: bool
    rows: List[PreviewRow]


class ProcessImportResponse(BaseModel):
    success: bool
    import_id: str
    status: str
    total_rows: int
    processed_rows: int
    failed_rows: int
    skipped_rows: int
    unreadable_line: Optional[int] = None


class RowEditRequest(BaseModel):
    data: Dict[str, Optional[str]]


class RowEditRecord(BaseModel):
    row_number: int
    data: Dict[str, Optional[str]]
    updated_at: Optional[datetime] = None


class RowEditListResponse(BaseModel):
    success: bool
    edits: List[RowEditRecord]


class ImportFailureRecord(BaseModel):
    id: str
    import_id: str
    row_number: Optional[int] = None
    attempt: int = 1
    raw_data: Dict[str, Any] = Field(default_factory=dict)
    error_type: str
    error_message: Optional[str] = None
    error_details: List[Any] = Field(default_factory=list)
    parsed_data: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: str
    review_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportFailureListResponse(BaseModel):
    success: bool
    failures: List[ImportFailureRecord]
    total_count: int
    limit: int
    offset: int


class ImportFailureResponse(BaseModel):
    success: bool
    failure: ImportFailureRecord


class FailureStatsResponse(BaseModel):
    success: bool
    total: int
    by_status: Dict[str, int]
    by_error_type: Dict[str, int]


class FailureActionRequest(BaseModel):
    note: Optional[str] = None


class BulkFailureActionRequest(BaseModel):
    failure_ids: List[str]
    action: Literal["review", "resolve", "ignore", "unmark"]
    note: Optional[str] = None


class BulkFailureActionResult(BaseModel):
    id: str
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None


class BulkFailureActionResponse(BaseModel):
    success: bool
    results: List[BulkFailureActionResult]


class PromoteFailureRequest(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    note: Optional[str] = None


class PromoteFailureResponse(BaseModel):
    success: bool
    transaction_id: str
    failure: ImportFailureRecord


class SavedMappingRecord(BaseModel):
    id: str
    name: str
    bank_name: Optional[str] = None
    column_mapping: Dict[str, Optional[str]]
    date_format: Optional[str] = None
    amount_format: Optional[str] = None
    amount_sign_strategy: Optional[str] = None
    currency: Optional[str] = None
    delimiter: Optional[str] = None
    quote_char: Optional[str] = None
    compatibility: Optional[float] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SavedMappingListResponse(BaseModel):
    success: bool
    mappings: List[SavedMappingRecord]


class SavedMappingResponse(BaseModel):
    success: bool
    mapping: SavedMappingRecord


class SaveMappingRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    bank_name: Optional[str] = None
    column_mapping: Dict[str, MappingValue]
    headers: Optional[List[str]] = None
    date_format: Optional[str] = None
    amount_format: Optional[str] = None
    amount_sign_strategy: Optional[str] = None
    currency: Optional[str] = None
    delimiter: Optional[str] = None
    quote_char: Optional[str] = None


class AutoDetectRequest(BaseModel):
    headers: List[str]


class AutoDetectResponse(BaseModel):
    success: bool
    column_mapping: Dict[str, Optional[int]]
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class DeleteResponse(BaseModel):
    success: bool
    message: str
