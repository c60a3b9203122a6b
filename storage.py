from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Protocol

from errors import UploadError

logger = logging.getLogger(__name__)


class FileStore(Protocol):
    def upload(self, bucket: str, path: str, data: bytes) -> None: ...

    def get_public_url(self, bucket: str, path: str) -> str: ...

    def remove(self, bucket: str, path: str) -> None: ...


class LocalFileStore:
    """Proof documents kept on local disk under ``<root>/<bucket>/<path>``.

    ``public_base_url`` is the address of a web server that publishes ``root``.
    Without one, public URLs are ``file://`` URIs of the stored objects.
    """

    def __init__(self, root: str | Path, public_base_url: str | None = None) -> None:
        self.root = Path(root)
        self.public_base_url = (public_base_url or "").rstrip("/")

    def _target(self, bucket: str, path: str) -> Path:
        bucket_dir = (self.root / bucket).resolve()
        target = (bucket_dir / path).resolve()
        if not target.is_relative_to(bucket_dir):
            raise UploadError(f"Invalid storage path: {path}")
        return target

    def upload(self, bucket: str, path: str, data: bytes) -> None:
        target = self._target(bucket, path)
        if target.exists():
            raise UploadError(f"File already exists: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise UploadError(f"File upload failed: {exc.strerror or exc}") from exc
        logger.info("Stored %d bytes at %s/%s", len(data), bucket, path)

    def get_public_url(self, bucket: str, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{path}"
        return self._target(bucket, path).as_uri()

    def read(self, bucket: str, path: str) -> bytes:
        return self._target(bucket, path).read_bytes()

    def remove(self, bucket: str, path: str) -> None:
        target = self._target(bucket, path)
        try:
            target.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove %s/%s", bucket, path, exc_info=True)


def load_proof(store: LocalFileStore, bucket: str, path: str | None) -> bytes | None:
    if not path:
        return None
    try:
        return store.read(bucket, path)
    except (OSError, UploadError):
        logger.warning("Proof %s/%s is not readable", bucket, path, exc_info=True)
        return None


def build_proof_path(owner_id: str, file_name: str, now: float | None = None) -> str:
    suffix = Path(file_name or "").suffix.lower() or ".bin"
    stamp = int((now if now is not None else time.time()) * 1000)
    return f"{owner_id}/{stamp}{suffix}"


def _remove_late_upload(store: FileStore, bucket: str, path: str, done: Future) -> None:
    # The caller already gave up on this upload; nothing references the object.
    if done.exception() is None:
        store.remove(bucket, path)


def upload_with_timeout(store: FileStore, bucket: str, path: str, data: bytes, timeout: float) -> str:
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(store.upload, bucket, path, data)
    try:
        future.result(timeout=timeout)
    except FutureTimeoutError:
        if not future.cancel():
            future.add_done_callback(lambda done: _remove_late_upload(store, bucket, path, done))
        raise UploadError(f"File upload timed out after {timeout:g} seconds.") from None
    except UploadError:
        raise
    except Exception as exc:
        raise UploadError(f"File upload failed: {exc}") from exc
    finally:
        executor.shutdown(wait=False)
    return store.get_public_url(bucket, path)
