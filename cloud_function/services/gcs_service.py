"""
Blob storage for source books, intermediate chapter documents and final output.

Key layout (one prefix per artifact kind):
    original/{job_id}                    uploaded source PDF
    chapters/{job_id}/{chapter_id}       materialized chapter slice
    condensed/{job_id}/{chapter_id}      rendered condensed chapter
    final/{job_id}                       assembled output
"""
import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import storage
from google.cloud.storage.retry import DEFAULT_RETRY

from config import BUCKET_NAME
from services.exceptions import BlobNotFound, StorageError
from services.logging_service import get_logger

PDF_CONTENT_TYPE = "application/pdf"

# Same backoff shape as RetryPolicy: 1s doubling, capped at 8s
STORAGE_RETRY = DEFAULT_RETRY.with_delay(initial=1.0, multiplier=2.0, maximum=8.0)


def original_key(job_id: str) -> str:
    return f"original/{job_id}"


def chapter_key(job_id: str, chapter_id: str) -> str:
    return f"chapters/{job_id}/{chapter_id}"


def condensed_key(job_id: str, chapter_id: str) -> str:
    return f"condensed/{job_id}/{chapter_id}"


def final_key(job_id: str) -> str:
    return f"final/{job_id}"


class GcsService:
    def __init__(self, bucket_name: str = BUCKET_NAME, client=None):
        self.client = client or storage.Client()
        self.bucket_name = bucket_name

    @property
    def bucket(self):
        return self.client.bucket(self.bucket_name)

    def get(self, key: str) -> bytes:
        try:
            return self.bucket.blob(key).download_as_bytes(retry=STORAGE_RETRY)
        except gcp_exceptions.NotFound as e:
            raise BlobNotFound(f"gs://{self.bucket_name}/{key} not found") from e
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to read gs://{self.bucket_name}/{key}: {e}") from e

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        """Uploads data and returns its gs:// locator."""
        try:
            self.bucket.blob(key).upload_from_string(data, content_type=content_type, retry=STORAGE_RETRY)
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to write gs://{self.bucket_name}/{key}: {e}") from e
        get_logger().debug("Blob written", key=key, size=len(data))
        return f"gs://{self.bucket_name}/{key}"

    def size(self, key: str) -> Optional[int]:
        """Stored size in bytes, or None when the object does not exist."""
        try:
            blob = self.bucket.get_blob(key, retry=STORAGE_RETRY)
        except gcp_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to stat gs://{self.bucket_name}/{key}: {e}") from e
        return blob.size if blob is not None else None

    def presigned_url(self, key: str, ttl: int, method: str = "GET") -> str:
        """
        V4 signed URL for direct client download (GET) or upload (PUT).

        On Cloud Functions the default credentials cannot sign locally, so
        signing goes through the IAM signBlob API of the runtime service account.
        """
        blob = self.bucket.blob(key)
        kwargs = {}
        credentials = getattr(self.client, "_credentials", None)
        if credentials is not None and not hasattr(credentials, "sign_bytes"):
            # Compute Engine credentials: delegate signing to IAM
            from google.auth.transport import requests as auth_requests
            credentials.refresh(auth_requests.Request())
            kwargs["service_account_email"] = credentials.service_account_email
            kwargs["access_token"] = credentials.token
        try:
            return blob.generate_signed_url(
                version="v4",
                expiration=timedelta(seconds=ttl),
                method=method,
                content_type=PDF_CONTENT_TYPE if method == "PUT" else None,
                **kwargs,
            )
        except (gcp_exceptions.GoogleAPICallError, AttributeError, ValueError) as e:
            raise StorageError(f"Failed to sign URL for gs://{self.bucket_name}/{key}: {e}") from e


class LocalBlobStore:
    """Filesystem blob store with the GcsService interface, for local runs."""

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes the store root: {key}")
        return path

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise BlobNotFound(f"{key} not found under {self.root}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        return key

    def size(self, key: str) -> Optional[int]:
        path = self._path(key)
        return path.stat().st_size if path.exists() else None

    def presigned_url(self, key: str, ttl: int, method: str = "GET") -> str:
        # No signing on the filesystem; the file URI is good for local use
        return self._path(key).as_uri()
