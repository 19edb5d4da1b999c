"""
File storage for avatars.

Buckets are directories under ``root_dir``; each keeps its settings in a
``.bucket.json`` file. Public buckets are served by the HTTP layer under
``/storage/<bucket>/<path>``.
"""
import json
import logging
from pathlib import Path, PurePosixPath
from typing import Optional

logger = logging.getLogger(__name__)

BUCKET_META = ".bucket.json"


class StorageError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class FileStorage:
    """Local-disk object storage with bucket-level size limits."""

    def __init__(self, root_dir: str, public_base_url: str = "http://localhost:3000"):
        self.root = Path(root_dir).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _bucket_dir(self, bucket: str) -> Path:
        if not bucket or "/" in bucket or bucket.startswith("."):
            raise StorageError(f"Invalid bucket name: {bucket!r}")
        return self.root / bucket

    def _object_path(self, bucket: str, path: str) -> Path:
        rel = PurePosixPath(path)
        if rel.is_absolute() or ".." in rel.parts or not rel.parts or rel.name == BUCKET_META:
            raise StorageError(f"Invalid object path: {path!r}")
        return self._bucket_dir(bucket).joinpath(*rel.parts)

    def bucket_exists(self, bucket: str) -> bool:
        return (self._bucket_dir(bucket) / BUCKET_META).exists()

    def bucket_settings(self, bucket: str) -> dict:
        meta = self._bucket_dir(bucket) / BUCKET_META
        if not meta.exists():
            raise StorageError(f"Bucket not found: {bucket}", status=404)
        return json.loads(meta.read_text())

    def create_bucket(self, bucket: str, public: bool = False, size_limit: Optional[int] = None) -> dict:
        directory = self._bucket_dir(bucket)
        if self.bucket_exists(bucket):
            raise StorageError(f"Bucket already exists: {bucket}", status=409)
        directory.mkdir(parents=True, exist_ok=True)
        settings = {"name": bucket, "public": public, "file_size_limit": size_limit}
        (directory / BUCKET_META).write_text(json.dumps(settings))
        logger.info(f"Created storage bucket {bucket} (public={public}, limit={size_limit})")
        return settings

    def upload(self, bucket: str, path: str, data: bytes, upsert: bool = True) -> str:
        """Store ``data`` at ``bucket/path``; returns the object path."""
        settings = self.bucket_settings(bucket)
        limit = settings.get("file_size_limit")
        if limit is not None and len(data) > limit:
            raise StorageError(
                f"File is too large ({len(data)} bytes, limit {limit})", status=413
            )
        target = self._object_path(bucket, path)
        if target.exists() and not upsert:
            raise StorageError(f"Object already exists: {path}", status=409)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        tmp.rename(target)
        return path

    def open_public(self, bucket: str, path: str) -> Path:
        """Filesystem path of a public object, for serving."""
        if not self.bucket_settings(bucket).get("public"):
            raise StorageError(f"Bucket is not public: {bucket}", status=403)
        target = self._object_path(bucket, path)
        if not target.is_file():
            raise StorageError(f"Object not found: {path}", status=404)
        return target

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/storage/{bucket}/{path}"
