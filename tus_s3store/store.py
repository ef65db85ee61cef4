"""The S3 upload store: creating uploads and looking them up again."""

from __future__ import annotations

import dataclasses
import re
import secrets

from .errors import UploadNotFoundError
from .fileinfo import FileInfo
from .s3api import S3API
from .settings import StoreSettings, split_ids
from .upload import S3Upload

# Characters not allowed in a header value; they are replaced before the
# metadata is attached to the S3 object.
_NON_PRINTABLE = re.compile(r"[^\x09\x20-\x7E]")


class S3Store(StoreSettings):
    """Stores tus uploads in an S3 bucket using multipart uploads.

    All settings of ``StoreSettings`` (prefixes, part sizes, temporary
    directory, concurrency) can be changed on the instance after creation.
    """

    def __init__(self, bucket: str, service: S3API) -> None:
        super().__init__(bucket=bucket)
        self.service = service

    def new_upload(self, info: FileInfo) -> S3Upload:
        """Start a multipart upload and write the info object for a new upload."""
        if info.size > self.max_object_size:
            raise ValueError(
                f"s3store: upload size of {info.size} bytes exceeds "
                f"MaxObjectSize of {self.max_object_size} bytes"
            )

        object_id = info.id or secrets.token_hex(16)
        meta = info.meta_data or {}
        metadata = {key: _NON_PRINTABLE.sub("?", value) for key, value in meta.items()}
        key = self.key_with_prefix(object_id)

        try:
            multipart_id = self.service.create_multipart_upload(
                self.bucket, key, metadata, meta.get("filetype")
            )
        except Exception as exc:
            raise RuntimeError(f"s3store: unable to create multipart upload:\n{exc}") from exc

        info = dataclasses.replace(
            info,
            id=f"{object_id}+{multipart_id}",
            storage={"Type": "s3store", "Bucket": self.bucket, "Key": key},
        )
        upload = S3Upload(self, object_id, multipart_id)
        try:
            upload._write_info(info)
        except Exception as exc:
            raise RuntimeError(f"s3store: unable to create info file:\n{exc}") from exc
        return upload

    def get_upload(self, upload_id: str) -> S3Upload:
        """Return the upload with the given ID without contacting S3."""
        object_id, multipart_id = split_ids(upload_id)
        if not object_id or not multipart_id:
            raise UploadNotFoundError()
        return S3Upload(self, object_id, multipart_id)

    @staticmethod
    def _own(upload: object) -> S3Upload:
        if not isinstance(upload, S3Upload):
            raise TypeError(f"expected an S3Upload, got {type(upload).__name__}")
        return upload

    def as_terminatable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one that can be terminated."""
        return self._own(upload)

    def as_length_declarable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one whose length can be declared later."""
        return self._own(upload)

    def as_concatable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one that can be built from partial uploads."""
        return self._own(upload)

    def as_servable_upload(self, upload: object) -> S3Upload:
        """Return the upload as one whose content can be served."""
        return self._own(upload)