"""
Local file storage for uploaded statements.

Uploads are kept under ``settings.upload_dir`` and read back by path during
processing.
"""
import hashlib
import logging
import os
import uuid
from typing import Any, Dict, Optional

from bankimport.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


def calculate_file_hash(file_content: bytes) -> str:
    return hashlib.sha256(file_content).hexdigest()


def upload_file(file_content: bytes, file_name: str, folder: Optional[str] = None) -> Dict[str, Any]:
    """
    Write uploaded bytes to the upload directory under a unique name.

    Returns:
        Dictionary with upload details:
        - file_name: Original file name
        - file_path: Path of the stored file
        - file_hash: SHA-256 of the stored bytes
        - size: File size in bytes

    Raises:
        StorageUploadError: If the file cannot be written
    """
    target_dir = folder or settings.upload_dir
    _, extension = os.path.splitext(file_name or "")
    file_path = os.path.join(target_dir, f"{uuid.uuid4()}{extension.lower() or '.csv'}")

    try:
        os.makedirs(target_dir, exist_ok=True)
        with open(file_path, "wb") as handle:
            handle.write(file_content)
    except OSError as e:
        logger.error(f"Storage upload failed for {file_name}: {e}")
        raise StorageUploadError(f"Upload failed: {str(e)}")

    return {
        "file_name": file_name,
        "file_path": file_path,
        "file_hash": calculate_file_hash(file_content),
        "size": len(file_content),
    }

