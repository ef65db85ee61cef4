"""The subset of the S3 API that the upload store relies on."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Protocol, runtime_checkable


@dataclass(frozen=True)
class ListedPart:
    """One part of a multipart upload as reported by the service."""

    number: int
    size: int
    etag: str


@dataclass
class ListPartsResult:
    """One page of the parts of a multipart upload."""

    parts: list[ListedPart] = field(default_factory=list)
    is_truncated: bool = False
    next_part_number_marker: str | None = None


@dataclass
class GetObjectResult:
    """An object's body together with the response headers the service sent."""

    body: BinaryIO
    content_length: int | None = None
    accept_ranges: str | None = None
    content_disposition: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    content_range: str | None = None
    content_type: str | None = None
    cache_control: str | None = None
    etag: str | None = None
    expires: str | None = None
    last_modified: datetime | None = None


@dataclass(frozen=True)
class HeadObjectResult:
    """Metadata of an object returned by a HEAD request."""

    content_length: int


@dataclass(frozen=True)
class DeleteError:
    """A single object that could not be deleted in a batch delete."""

    code: str
    key: str
    message: str


@dataclass
class DeleteObjectsResult:
    """Outcome of a batch delete: the objects that failed, if any."""

    errors: list[DeleteError] = field(default_factory=list)


@runtime_checkable
class S3API(Protocol):
    """Operations the store performs against an S3-compatible service.

    Implementations raise ``tus_s3store.errors.S3Error`` (or a subclass) when
    the service reports an error.
    """

    def put_object(
        self, bucket: str, key: str, body: BinaryIO, content_length: int | None = None
    ) -> None:
        """Store an object under the given key."""
        ...

    def list_parts(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number_marker: str | None = None,
        max_parts: int | None = None,
    ) -> ListPartsResult:
        """List the parts of a multipart upload, starting after the marker."""
        ...

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: BinaryIO
    ) -> str:
        """Upload one part of a multipart upload and return its ETag."""
        ...

    def get_object(self, bucket: str, key: str, **kwargs: object) -> GetObjectResult:
        """Fetch an object.

        Accepted keyword arguments: ``range``, ``if_match``, ``if_none_match``,
        ``if_modified_since`` and ``if_unmodified_since``.
        """
        ...

    def head_object(self, bucket: str, key: str) -> HeadObjectResult:
        """Fetch the metadata of an object."""
        ...

    def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        metadata: Mapping[str, str],
        content_type: str | None = None,
    ) -> str:
        """Start a multipart upload and return its upload ID."""
        ...

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""
        ...

    def delete_object(self, bucket: str, key: str) -> None:
        """Delete a single object."""
        ...

    def delete_objects(
        self, bucket: str, keys: Sequence[str], quiet: bool = True
    ) -> DeleteObjectsResult:
        """Delete several objects in one request."""
        ...

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> None:
        """Complete a multipart upload from (part number, ETag) pairs."""
        ...

    def upload_part_copy(
        self, bucket: str, key: str, upload_id: str, part_number: int, copy_source: str
    ) -> str:
        """Copy an existing object into a part and return the part's ETag."""
        ...