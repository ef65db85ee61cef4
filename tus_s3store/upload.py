"""A single tus upload backed by an S3 multipart upload."""

from __future__ import annotations

import dataclasses
import io
import os
import shutil
import tempfile
import threading
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, BinaryIO, Sequence

from .errors import (
    IncompleteUploadError,
    NoSuchKey,
    NoSuchUpload,
    NotFound,
    S3Error,
    UploadNotFoundError,
    is_aws_error_code,
)
from .fileinfo import FileInfo
from .part_producer import FileChunk, PartProducer

_PRESIGN_EXPIRY_SECONDS = 15 * 60


@dataclass
class _Part:
    number: int
    size: int
    etag: str = ""


class _JoinedError(Exception):
    """Several errors that occurred together."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        super().__init__("\n".join(str(error) for error in errors))
        self.errors = list(errors)


class _ChainedReader:
    """Reads from several binary streams one after another."""

    def __init__(self, *readers: BinaryIO) -> None:
        self._readers = list(readers)

    def read(self, size: int = -1) -> bytes:
        while self._readers:
            data = self._readers[0].read(size)
            if data:
                return data
            self._readers.pop(0)
        return b""


def _is_error(error: BaseException | None, *classes: type) -> bool:
    seen: set[int] = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, classes):
            return True
        seen.add(id(error))
        error = error.__cause__ if error.__cause__ is not None else error.__context__
    return False


def _is_missing_part_error(error: BaseException) -> bool:
    return (
        _is_error(error, NoSuchKey, NotFound)
        or is_aws_error_code(error, "AccessDenied")
        or is_aws_error_code(error, "Forbidden")
    )


def _remove_temp_file(handle: BinaryIO) -> None:
    handle.close()
    try:
        os.remove(handle.name)
    except OSError:
        pass


class S3Upload:
    """An upload stored as an info object, a multipart upload and an optional incomplete part.

    ``store`` provides the store settings (bucket, prefixes, part sizes,
    temporary directory, upload semaphore) and the S3 ``service``.
    """

    def __init__(self, store: Any, object_id: str, multipart_id: str) -> None:
        self.store = store
        self.object_id = object_id
        self.multipart_id = multipart_id
        self.info: FileInfo | None = None
        self.parts: list[_Part] = []
        self.incomplete_part_size = 0

    # ----- helpers around keys and the service -----

    @property
    def _service(self) -> Any:
        return self.store.service

    @property
    def _key(self) -> str:
        return self.store.key_with_prefix(self.object_id)

    def _meta_key(self, suffix: str) -> str:
        return self.store.metadata_key_with_prefix(self.object_id + suffix)

    # ----- info -----

    def _write_info(self, info: FileInfo) -> None:
        self.info = info
        data = info.to_json()
        self._service.put_object(
            self.store.bucket, self._meta_key(".info"), io.BytesIO(data), len(data)
        )

    def get_info(self) -> FileInfo:
        """Return the upload's info, fetching it from S3 on first use."""
        info, _, _ = self._internal_info()
        return info

    def _internal_info(self) -> tuple[FileInfo, list[_Part], int]:
        if self.info is None:
            info, parts, incomplete = self._fetch_info()
            self.info = info
            self.parts = parts
            self.incomplete_part_size = incomplete
        return dataclasses.replace(self.info), self.parts, self.incomplete_part_size

    def _fetch_info(self) -> tuple[FileInfo, list[_Part], int]:
        with ThreadPoolExecutor(max_workers=3) as pool:
            info_future = pool.submit(self._read_info_object)
            parts_future = pool.submit(self._list_all_parts)
            head_future = pool.submit(self._head_incomplete_part)

        info_error = info_future.exception()
        if info_error is not None:
            if _is_error(info_error, NoSuchKey):
                raise UploadNotFoundError() from info_error
            raise info_error
        info = info_future.result()

        parts_error = parts_future.exception()
        if parts_error is not None:
            # A missing multipart upload means it has already been completed.
            if (
                _is_error(parts_error, NoSuchUpload, NoSuchKey)
                or is_aws_error_code(parts_error, "NoSuchUpload")
                or is_aws_error_code(parts_error, "NoSuchKey")
            ):
                info.offset = info.size
                head_error = head_future.exception()
                incomplete = 0 if head_error is not None else head_future.result()
                return info, [], incomplete
            raise parts_error

        head_error = head_future.exception()
        if head_error is not None:
            raise head_error

        parts = parts_future.result()
        incomplete = head_future.result()
        info.offset = incomplete + sum(part.size for part in parts)
        return info, parts, incomplete

    def _read_info_object(self) -> FileInfo:
        result = self._service.get_object(self.store.bucket, self._meta_key(".info"))
        return FileInfo.from_json(result.body.read())

    def _list_all_parts(self) -> list[_Part]:
        parts: list[_Part] = []
        marker: str | None = None
        while True:
            page = self._service.list_parts(
                self.store.bucket, self._key, self.multipart_id, part_number_marker=marker
            )
            parts.extend(_Part(p.number, p.size, p.etag) for p in page.parts)
            if not page.is_truncated:
                return parts
            marker = page.next_part_number_marker

    # ----- incomplete part -----

    def _head_incomplete_part(self) -> int:
        try:
            result = self._service.head_object(self.store.bucket, self._meta_key(".part"))
        except Exception as exc:
            if _is_missing_part_error(exc):
                return 0
            raise
        return result.content_length

    def _download_incomplete_part(self) -> BinaryIO | None:
        try:
            result = self._service.get_object(self.store.bucket, self._meta_key(".part"))
        except Exception as exc:
            if _is_missing_part_error(exc):
                return None
            raise
        handle = tempfile.NamedTemporaryFile(
            mode="w+b",
            prefix="tusd-s3-tmp-",
            dir=self.store.temporary_directory or None,
            delete=False,
        )
        try:
            copied = 0
            while True:
                data = result.body.read(64 * 1024)
                if not data:
                    break
                handle.write(data)
                copied += len(data)
            if result.content_length is not None and copied < result.content_length:
                raise OSError("short read of incomplete upload")
            handle.flush()
            handle.seek(0)
        except BaseException:
            _remove_temp_file(handle)
            raise
        finally:
            close = getattr(result.body, "close", None)
            if close is not None:
                close()
        return handle

    # ----- writing -----

    def write_chunk(self, offset: int, src: BinaryIO) -> int:
        """Upload data from `src` starting at `offset`; return the number of bytes taken."""
        _, _, incomplete = self._internal_info()

        incomplete_file: BinaryIO | None = None
        if incomplete > 0:
            incomplete_file = self._download_incomplete_part()
            if incomplete_file is None:
                raise RuntimeError(
                    "s3store: Expected an incomplete part file but did not get any"
                )
        try:
            if incomplete_file is not None:
                self._service.delete_object(self.store.bucket, self._meta_key(".part"))
                src = _ChainedReader(incomplete_file, src)  # type: ignore[assignment]
                offset -= incomplete

            uploaded, error = self._upload_parts(offset, src)
        finally:
            if incomplete_file is not None:
                _remove_temp_file(incomplete_file)

        uploaded = max(uploaded - incomplete, 0)
        assert self.info is not None
        self.info.offset += uploaded
        if error is not None:
            raise error
        return uploaded

    def _upload_parts(self, offset: int, src: BinaryIO) -> tuple[int, BaseException | None]:
        store = self.store
        info, parts, _ = self._internal_info()
        size = info.size
        part_size = store.calc_optimal_part_size(size)
        next_number = len(parts) + 1

        producer = PartProducer(src, store.max_buffered_parts, store.temporary_directory)
        thread = threading.Thread(target=producer.produce, args=(part_size,), daemon=True)
        thread.start()

        semaphore = store.upload_semaphore
        futures = []
        uploaded = 0
        try:
            with ThreadPoolExecutor() as pool:
                chunks = producer.chunks()
                while True:
                    semaphore.acquire()
                    chunk = next(chunks, None)
                    if chunk is None:
                        semaphore.release()
                        break
                    is_final = not info.size_is_deferred and size == offset + uploaded + chunk.size
                    if chunk.size >= store.min_part_size or is_final:
                        part = _Part(next_number, chunk.size)
                        self.parts.append(part)
                        futures.append(pool.submit(self._send_part, part, chunk))
                    else:
                        futures.append(pool.submit(self._send_incomplete_part, chunk))
                    uploaded += chunk.size
                    next_number += 1
        finally:
            producer.cancel()
            producer.close_unread_files()
            thread.join()

        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            return 0, errors[0]
        return uploaded, producer.error

    def _send_part(self, part: _Part, chunk: FileChunk) -> None:
        try:
            try:
                part.etag = self._put_part(part.number, chunk)
            finally:
                chunk.close()
        finally:
            self.store.upload_semaphore.release()

    def _send_incomplete_part(self, chunk: FileChunk) -> None:
        try:
            try:
                self._service.put_object(
                    self.store.bucket, self._meta_key(".part"), chunk.reader
                )
                self.incomplete_part_size = chunk.size
            finally:
                chunk.close()
        finally:
            self.store.upload_semaphore.release()

    def _put_part(self, number: int, chunk: FileChunk) -> str:
        store = self.store
        if not store.disable_content_hashes:
            return self._service.upload_part(
                store.bucket, self._key, self.multipart_id, number, chunk.reader
            )
        # Send the part ourselves to a presigned URL so no body hash is computed.
        presign = getattr(self._service, "presign_upload_part", None)
        if presign is None:
            raise RuntimeError("s3store: failed to cast S3 service for presigning")
        try:
            url = presign(
                store.bucket, self._key, self.multipart_id, number, _PRESIGN_EXPIRY_SECONDS
            )
        except Exception as exc:
            raise RuntimeError(f"s3store: failed to presign UploadPart: {exc}") from exc
        request = urllib.request.Request(
            url, data=chunk.reader, method="PUT", headers={"Content-Length": str(chunk.size)}
        )
        with urllib.request.urlopen(request) as response:
            if response.status != 200:
                text = response.read().decode("utf-8", "replace")
                raise RuntimeError(
                    f"s3store: unexpected response code {response.status} "
                    f"for presigned upload: {text}"
                )
            return response.headers.get("ETag", "")

    # ----- reading -----

    def get_reader(self) -> BinaryIO:
        """Return a stream of the finished upload's content."""
        try:
            return self._service.get_object(self.store.bucket, self._key).body
        except Exception as exc:
            if not _is_error(exc, NoSuchKey):
                raise
        try:
            self._service.list_parts(
                self.store.bucket, self._key, self.multipart_id, max_parts=0
            )
        except Exception as exc:
            if _is_error(exc, NoSuchUpload) or is_aws_error_code(exc, "NoSuchUpload"):
                raise UploadNotFoundError() from exc
            raise
        raise IncompleteUploadError()

    # ----- termination -----

    def terminate(self) -> None:
        """Abort the multipart upload and delete the data, info and part objects."""
        errors: list[BaseException] = []
        lock = threading.Lock()

        def abort() -> None:
            try:
                self._service.abort_multipart_upload(
                    self.store.bucket, self._key, self.multipart_id
                )
            except Exception as exc:
                if not _is_error(exc, NoSuchUpload):
                    with lock:
                        errors.append(exc)

        def delete() -> None:
            keys = [self._key, self._meta_key(".part"), self._meta_key(".info")]
            try:
                result = self._service.delete_objects(self.store.bucket, keys, quiet=True)
            except Exception as exc:
                with lock:
                    errors.append(exc)
                return
            for item in result.errors:
                if item.code != "NoSuchKey":
                    with lock:
                        errors.append(
                            S3Error(item.code, item.message)
                            if False
                            else RuntimeError(
                                f"AWS S3 Error ({item.code}) for object {item.key}: {item.message}"
                            )
                        )

        with ThreadPoolExecutor(max_workers=2) as pool:
            pool.submit(abort)
            pool.submit(delete)

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise _JoinedError(errors)

    # ----- finishing -----

    def finish_upload(self) -> None:
        """Complete the multipart upload from all uploaded parts."""
        _, parts, _ = self._internal_info()
        if not parts:
            # S3 needs at least one part, so an empty upload gets an empty part.
            etag = self._service.upload_part(
                self.store.bucket, self._key, self.multipart_id, 1, io.BytesIO(b"")
            )
            parts = [_Part(1, 0, etag)]
        self._service.complete_multipart_upload(
            self.store.bucket,
            self._key,
            self.multipart_id,
            [(part.number, part.etag) for part in parts],
        )

    # ----- concatenation -----

    def concat_uploads(self, partial_uploads: Sequence[S3Upload]) -> None:
        """Build this upload from the content of the given finished uploads."""
        has_small_part = False
        for partial in partial_uploads:
            if partial.get_info().size < self.store.min_part_size:
                has_small_part = True
        if has_small_part:
            self._concat_using_download(partial_uploads)
        else:
            self._concat_using_multipart(partial_uploads)

    def _concat_using_download(self, partial_uploads: Sequence[S3Upload]) -> None:
        store = self.store
        handle = tempfile.NamedTemporaryFile(
            mode="w+b",
            prefix="tusd-s3-concat-tmp-",
            dir=store.temporary_directory or None,
            delete=False,
        )
        try:
            for partial in partial_uploads:
                result = self._service.get_object(
                    store.bucket, store.key_with_prefix(partial.object_id)
                )
                try:
                    shutil.copyfileobj(result.body, handle)
                finally:
                    close = getattr(result.body, "close", None)
                    if close is not None:
                        close()
            handle.flush()
            handle.seek(0)
            self._service.put_object(store.bucket, self._key, handle)
        finally:
            _remove_temp_file(handle)

        def abort() -> None:
            try:
                self._service.abort_multipart_upload(store.bucket, self._key, self.multipart_id)
            except Exception:
                pass  # the outcome does not depend on it

        threading.Thread(target=abort, daemon=True).start()

    def _concat_using_multipart(self, partial_uploads: Sequence[S3Upload]) -> None:
        store = self.store
        parts: list[_Part | None] = [None] * len(partial_uploads)

        def copy(number: int, partial: S3Upload) -> None:
            source = store.bucket + "/" + store.key_with_prefix(partial.object_id)
            etag = self._service.upload_part_copy(
                store.bucket, self._key, self.multipart_id, number, source
            )
            parts[number - 1] = _Part(number, -1, etag)

        with ThreadPoolExecutor() as pool:
            futures = [
                pool.submit(copy, number, partial)
                for number, partial in enumerate(partial_uploads, start=1)
            ]
        for future in futures:
            error = future.exception()
            if error is not None:
                raise error

        self.parts = [part for part in parts if part is not None]
        self.finish_upload()

    # ----- deferred length -----

    def declare_length(self, length: int) -> None:
        """Set the final size of an upload created with a deferred length."""
        info = self.get_info()
        info.size = length
        info.size_is_deferred = False
        self._write_info(info)