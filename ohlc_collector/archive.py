"""
Archival object storage for normalized batches.

Blobs live at ``<prefix>/<exchange_table>/<granularity_label>/<run_label>.csv``.
Writing the same path again overwrites it, so a rerun with the same run label
is idempotent for the archive.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from google.cloud import storage

from .catalog import Series

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPE = "text/csv"


def archive_path(prefix: str, series: Series, run_label: str, extension: str = "csv") -> str:
    parts = [p for p in (prefix.strip("/"), series.exchange_table, series.granularity_label) if p]
    return "/".join(parts + [f"{run_label}.{extension}"])


class BlobStore(ABC):

    @abstractmethod
    def write(self, path: str, content: Union[bytes, str], content_type: str = CSV_CONTENT_TYPE):
        """Write (or overwrite) a blob."""

    @abstractmethod
    def read(self, path: str) -> bytes:
        """Read a blob's content."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check whether a blob exists."""


class LocalBlobStore(BlobStore):
    """Blob store backed by a local directory."""

    def __init__(self, base_path: Union[str, Path] = "./archive"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local blob store initialized at {self.base_path}")

    def _resolve_path(self, path: str) -> Path:
        clean_path = Path(path).as_posix().lstrip("/")
        full_path = (self.base_path / clean_path).resolve()
        try:
            full_path.relative_to(self.base_path)
        except ValueError:
            raise ValueError(f"Invalid path: {path} (outside base directory)")
        return full_path

    def write(self, path: str, content: Union[bytes, str], content_type: str = CSV_CONTENT_TYPE):
        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(content, str):
            content = content.encode("utf-8")

        full_path.write_bytes(content)
        logger.info(f"Wrote {len(content)} bytes to {full_path}")

    def read(self, path: str) -> bytes:
        return self._resolve_path(path).read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve_path(path).exists()


class GCSBlobStore(BlobStore):
    """Blob store backed by a Google Cloud Storage bucket."""

    def __init__(
        self,
        bucket_name: str,
        client: Optional[storage.Client] = None,
        timeout_seconds: float = 60
    ):
        self.bucket_name = bucket_name
        self.client = client or storage.Client()
        self.bucket = self.client.bucket(bucket_name)
        self.timeout_seconds = timeout_seconds

    def write(self, path: str, content: Union[bytes, str], content_type: str = CSV_CONTENT_TYPE):
        blob = self.bucket.blob(path)
        blob.upload_from_string(content, content_type=content_type, timeout=self.timeout_seconds)
        logger.info(f"Uploaded {len(content)} bytes to gs://{self.bucket_name}/{path}")

    def read(self, path: str) -> bytes:
        return self.bucket.blob(path).download_as_bytes(timeout=self.timeout_seconds)

    def exists(self, path: str) -> bool:
        return self.bucket.blob(path).exists(timeout=self.timeout_seconds)
