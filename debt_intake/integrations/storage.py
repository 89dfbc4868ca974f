"""
Blob storage for uploaded import files and failed-row exports.

The pipeline only needs three operations: write bytes and get a handle
back, read bytes for a handle, delete a handle. ``storage_provider="local"``
keeps blobs on disk (development, tests); any other provider name goes
through boto3 against an S3-compatible endpoint (AWS S3, Backblaze B2,
MinIO, Wasabi...).
"""
import logging
from pathlib import Path
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from debt_intake.core.config import settings
from debt_intake.core.errors import IntakeError

logger = logging.getLogger(__name__)


class StorageError(IntakeError):
    """A blob could not be written, read or deleted."""


class StorageConnectionError(StorageError):
    pass


class StorageUploadError(StorageError):
    pass


class StorageDownloadError(StorageError):
    pass


def _is_local() -> bool:
    return (settings.storage_provider or "local").lower() == "local"


def _local_path(file_path: str) -> Path:
    root = Path(settings.storage_local_root).resolve()
    target = (root / file_path).resolve()
    if root != target and root not in target.parents:
        raise StorageError(f"Refusing to access path outside storage root: {file_path}")
    return target


def get_storage_client():
    """
    Build a boto3 S3 client for the configured provider.

    Raises:
        StorageConnectionError: If credentials or the bucket are missing, or boto3 rejects the settings
    """
    missing = [
        name for name, value in (
            ("STORAGE_ACCESS_KEY_ID", settings.storage_access_key_id),
            ("STORAGE_SECRET_ACCESS_KEY", settings.storage_secret_access_key),
            ("STORAGE_BUCKET_NAME", settings.storage_bucket_name),
        ) if not value
    ]
    if missing:
        raise StorageConnectionError(
            f"Storage provider {settings.storage_provider!r} needs {', '.join(missing)}"
        )

    try:
        return boto3.client(
            "s3",
            aws_access_key_id=settings.storage_access_key_id,
            aws_secret_access_key=settings.storage_secret_access_key,
            endpoint_url=settings.storage_endpoint_url or None,
            region_name=settings.storage_region or None,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )
    except (BotoCoreError, ValueError) as e:
        logger.error("Could not build %s client: %s", settings.storage_provider, e)
        raise StorageConnectionError(f"Failed to connect to storage: {e}")


def _safe_name(file_name: str) -> str:
    # Drop any directory components supplied by the client.
    return Path(file_name.replace("\\", "/")).name or "upload"


def upload_file(file_content: bytes, file_name: str, folder: str = "uploads") -> Dict[str, Any]:
    """
    Store a blob.

    Args:
        file_content: The file content as bytes
        file_name: The name for the file
        folder: The folder/prefix to store the file in (default: "uploads")

    Returns:
        Dictionary with ``file_name``, ``file_path`` (the handle) and ``size``

    Raises:
        StorageUploadError: If upload fails
    """
    file_path = f"{folder.strip('/')}/{_safe_name(file_name)}"

    if _is_local():
        try:
            target = _local_path(file_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(file_content)
        except OSError as e:
            logger.error("Local storage write failed for %s: %s", file_path, e)
            raise StorageUploadError(f"Upload failed: {e}")
    else:
        client = get_storage_client()
        try:
            client.put_object(
                Bucket=settings.storage_bucket_name,
                Key=file_path,
                Body=file_content,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Storage upload failed for %s: %s", file_path, e)
            raise StorageUploadError(f"Upload failed: {e}")

    logger.info("Stored %s (%d bytes)", file_path, len(file_content))
    return {
        "file_name": file_name,
        "file_path": file_path,
        "size": len(file_content),
    }


def download_file(file_path: str) -> bytes:
    """
    Read a blob back.

    Raises:
        StorageDownloadError: If the blob is missing or cannot be read
    """
    if _is_local():
        try:
            return _local_path(file_path).read_bytes()
        except FileNotFoundError:
            raise StorageDownloadError(f"File not found: {file_path}")
        except OSError as e:
            raise StorageDownloadError(f"Download failed: {e}")

    client = get_storage_client()
    try:
        response = client.get_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return response['Body'].read()
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        if error_code == 'NoSuchKey':
            raise StorageDownloadError(f"File not found: {file_path}")
        logger.error("Storage download failed: %s - %s", error_code, e)
        raise StorageDownloadError(f"Download failed: {e}")
    except BotoCoreError as e:
        logger.error("Storage download failed: %s", e)
        raise StorageDownloadError(f"Download failed: {e}")


def delete_file(file_path: str) -> bool:
    """
    Delete a blob.

    Returns:
        True if deletion was successful (or the blob was already gone), False otherwise
    """
    if _is_local():
        try:
            _local_path(file_path).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error("Error deleting %s from local storage: %s", file_path, e)
            return False

    try:
        client = get_storage_client()
        client.delete_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return True
    except (StorageError, ClientError, BotoCoreError) as e:
        logger.error("Error deleting file from storage: %s", e)
        return False
