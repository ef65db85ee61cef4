"""Tunable settings of the S3 store and the helpers derived from them."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from .partsize import calc_optimal_part_size as _calc_optimal_part_size

_KIB = 1024
_MIB = 1024 * _KIB
_GIB = 1024 * _MIB
_TIB = 1024 * _GIB


def _with_trailing_slash(prefix: str) -> str:
    if prefix and not prefix.endswith("/"):
        return prefix + "/"
    return prefix


@dataclass
class StoreSettings:
    """Bucket, key prefixes, part size limits and concurrency of the store."""

    bucket: str = ""
    object_prefix: str = ""
    metadata_object_prefix: str = ""
    max_part_size: int = 5 * _GIB
    min_part_size: int = 5 * _MIB
    preferred_part_size: int = 50 * _MIB
    max_multipart_parts: int = 10_000
    max_object_size: int = 5 * _TIB
    max_buffered_parts: int = 20
    temporary_directory: str = ""
    disable_content_hashes: bool = False
    concurrent_part_uploads: int = 10
    upload_semaphore: threading.Semaphore = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.set_concurrent_part_uploads(self.concurrent_part_uploads)

    def set_concurrent_part_uploads(self, limit: int) -> None:
        """Change how many part uploads to S3 may run at the same time."""
        self.upload_semaphore = threading.Semaphore(limit)
        self.concurrent_part_uploads = limit

    def key_with_prefix(self, key: str) -> str:
        """Return the object key for uploaded data."""
        return _with_trailing_slash(self.object_prefix) + key

    def metadata_key_with_prefix(self, key: str) -> str:
        """Return the object key for .info and .part objects."""
        prefix = self.metadata_object_prefix or self.object_prefix
        return _with_trailing_slash(prefix) + key

    def calc_optimal_part_size(self, size: int) -> int:
        """Return the part size for an upload of `size` bytes under these limits."""
        return _calc_optimal_part_size(
            size, self.preferred_part_size, self.max_multipart_parts, self.max_part_size
        )


def split_ids(upload_id: str) -> tuple[str, str]:
    """Split an upload ID into object ID and multipart ID at the last plus sign.

    Returns two empty strings when the ID holds no plus sign.
    """
    object_id, sep, multipart_id = upload_id.rpartition("+")
    if not sep:
        return "", ""
    return object_id, multipart_id