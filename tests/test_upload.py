import io
import os
import threading
import time
from dataclasses import dataclass

import pytest

from tus_s3store.errors import (
    IncompleteUploadError,
    NoSuchKey,
    NoSuchUpload,
    NotFound,
    S3Error,
    UploadNotFoundError,
)
from tus_s3store.fileinfo import FileInfo
from tus_s3store.s3api import (
    DeleteError,
    DeleteObjectsResult,
    GetObjectResult,
    HeadObjectResult,
    ListedPart,
    ListPartsResult,
)
from tus_s3store.settings import StoreSettings
from tus_s3store.upload import S3Upload


@dataclass
class FakeStore(StoreSettings):
    service: object = None


class FakeS3:
    def __init__(self):
        self.objects = {}
        self.pages = {None: ListPartsResult()}
        self.list_error = None
        self.head_error = None
        self.upload_part_error = None
        self.abort_error = None
        self.delete_result = DeleteObjectsResult()
        self.uploaded = {}
        self.completed = None
        self.copies = []
        self.deleted_batches = []
        self.aborted = []
        self.list_calls = []
        self.lock = threading.Lock()

    def put_object(self, bucket, key, body, content_length=None):
        data = body.read()
        with self.lock:
            self.objects[key] = data

    def list_parts(self, bucket, key, upload_id, part_number_marker=None, max_parts=None):
        self.list_calls.append((key, upload_id, part_number_marker, max_parts))
        if self.list_error is not None:
            raise self.list_error
        return self.pages[part_number_marker]

    def upload_part(self, bucket, key, upload_id, part_number, body):
        if self.upload_part_error is not None:
            return self.upload_part_error(part_number)
        with self.lock:
            self.uploaded[part_number] = body.read()
        return f"etag-{part_number}"

    def get_object(self, bucket, key, **kwargs):
        if key not in self.objects:
            raise NoSuchKey()
        data = self.objects[key]
        return GetObjectResult(body=io.BytesIO(data), content_length=len(data))

    def head_object(self, bucket, key):
        if self.head_error is not None:
            raise self.head_error
        if key not in self.objects:
            raise NoSuchKey()
        return HeadObjectResult(content_length=len(self.objects[key]))

    def create_multipart_upload(self, bucket, key, metadata, content_type=None):
        return "multipartId"

    def abort_multipart_upload(self, bucket, key, upload_id):
        self.aborted.append((key, upload_id))
        if self.abort_error is not None:
            raise self.abort_error

    def delete_object(self, bucket, key):
        self.objects.pop(key, None)

    def delete_objects(self, bucket, keys, quiet=True):
        self.deleted_batches.append(list(keys))
        return self.delete_result

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        self.completed = (key, upload_id, list(parts))

    def upload_part_copy(self, bucket, key, upload_id, part_number, copy_source):
        with self.lock:
            self.copies.append((part_number, copy_source))
        return f"etag-{part_number}"


def info_json(size, extra=""):
    return (
        '{"ID":"uploadId","Size":%d,"Offset":0,"MetaData":null,"IsPartial":false,'
        '"IsFinal":false,"PartialUploads":null,"Storage":null%s}' % (size, extra)
    ).encode()


def make(service=None, **settings):
    service = service or FakeS3()
    store = FakeStore(bucket="bucket", service=service, **settings)
    return service, store, S3Upload(store, "uploadId", "multipartId")


SMALL = dict(max_part_size=8, min_part_size=4, preferred_part_size=4)


def two_pages():
    return {
        None: ListPartsResult(
            parts=[ListedPart(1, 100, "etag-1"), ListedPart(2, 200, "etag-2")],
            is_truncated=True,
            next_part_number_marker="2",
        ),
        "2": ListPartsResult(parts=[ListedPart(3, 100, "etag-3")]),
    }


def test_get_info_not_found():
    s3, _, upload = make()
    s3.list_error = NoSuchUpload()
    with pytest.raises(UploadNotFoundError):
        upload.get_info()


def test_get_info_paginates():
    s3, _, upload = make()
    s3.objects["uploadId.info"] = (
        b'{"ID":"uploadId+multipartId","Size":500,"Offset":0,"MetaData":{"bar":"men\xc3\xbc","foo":"hello"},'
        b'"IsPartial":false,"IsFinal":false,"PartialUploads":null,'
        b'"Storage":{"Bucket":"bucket","Key":"my/uploaded/files/uploadId","Type":"s3store"}}'
    )
    s3.pages = two_pages()
    info = upload.get_info()
    assert info.size == 500
    assert info.offset == 400
    assert info.id == "uploadId+multipartId"
    assert info.meta_data["bar"] == "menü"
    assert info.storage["Key"] == "my/uploaded/files/uploadId"
    assert [c[2] for c in s3.list_calls] == [None, "2"]


def test_get_info_with_metadata_prefix():
    s3 = FakeS3()
    s3.objects["my/metadata/uploadId.info"] = info_json(500)
    s3.pages = two_pages()
    _, _, upload = make(s3, metadata_object_prefix="my/metadata")
    assert upload.get_info().offset == 400


def test_get_info_with_incomplete_part():
    s3, _, upload = make()
    s3.objects["uploadId.info"] = info_json(500)
    s3.objects["uploadId.part"] = b"0123456789"
    assert upload.get_info().offset == 10


def test_get_info_finished():
    s3, _, upload = make()
    s3.objects["uploadId.info"] = info_json(500)
    s3.list_error = NoSuchUpload()
    info = upload.get_info()
    assert (info.size, info.offset) == (500, 500)


def test_get_reader():
    s3, _, upload = make()
    s3.objects["uploadId"] = b"hello world"
    assert upload.get_reader().read() == b"hello world"


def test_get_reader_not_found():
    s3, _, upload = make()
    s3.list_error = NoSuchUpload()
    with pytest.raises(UploadNotFoundError):
        upload.get_reader()
    assert s3.list_calls == [("uploadId", "multipartId", None, 0)]


def test_get_reader_not_finished():
    _, _, upload = make()
    with pytest.raises(IncompleteUploadError) as caught:
        upload.get_reader()
    assert str(caught.value) == "ERR_INCOMPLETE_UPLOAD: cannot stream non-finished upload"


def test_declare_length():
    s3, _, upload = make()
    s3.objects["uploadId.info"] = (
        b'{"ID":"uploadId+multipartId","Size":0,"SizeIsDeferred":true,"Offset":0,"MetaData":{},'
        b'"IsPartial":false,"IsFinal":false,"PartialUploads":null,'
        b'"Storage":{"Bucket":"bucket","Key":"uploadId","Type":"s3store"}}'
    )
    s3.head_error = NotFound()
    upload.declare_length(500)
    assert s3.objects["uploadId.info"] == (
        b'{"ID":"uploadId+multipartId","Size":500,"SizeIsDeferred":false,"Offset":0,"MetaData":{},'
        b'"IsPartial":false,"IsFinal":false,"PartialUploads":null,'
        b'"Storage":{"Bucket":"bucket","Key":"uploadId","Type":"s3store"}}'
    )
    assert upload.get_info().size == 500


def test_finish_upload():
    s3, _, upload = make()
    s3.objects["uploadId.info"] = info_json(400)
    s3.pages = two_pages()
    s3.head_error = NotFound()
    upload.finish_upload()
    assert s3.completed == (
        "uploadId",
        "multipartId",
        [(1, "etag-1"), (2, "etag-2"), (3, "etag-3")],
    )


def test_finish_empty_upload_sends_empty_part():
    s3, _, upload = make()
    upload.info = FileInfo(id="uploadId+multipartId", size=0)
    upload.finish_upload()
    assert s3.uploaded == {1: b""}
    assert s3.completed[2] == [(1, "etag-1")]


def test_write_chunk():
    s3, _, upload = make(**SMALL)
    s3.objects["uploadId.info"] = info_json(500)
    s3.pages = {None: ListPartsResult(parts=[ListedPart(1, 100, "etag-1"), ListedPart(2, 200, "etag-2")])}
    assert upload.write_chunk(300, io.BytesIO(b"1234567890ABCD")) == 14
    assert s3.uploaded == {3: b"1234", 4: b"5678", 5: b"90AB"}
    assert s3.objects["uploadId.part"] == b"CD"


def test_write_chunk_incomplete_part_because_too_small():
    s3, _, upload = make()
    s3.objects["uploadId.info"] = info_json(500)
    s3.pages = {None: ListPartsResult(parts=[ListedPart(1, 100, "etag-1"), ListedPart(2, 200, "etag-2")])}
    assert upload.write_chunk(300, io.BytesIO(b"1234567890")) == 10
    assert s3.objects["uploadId.part"] == b"1234567890"
    assert s3.uploaded == {}


def test_write_chunk_prepends_incomplete_part():
    s3, _, upload = make(**SMALL)
    s3.objects["uploadId.info"] = info_json(5)
    s3.objects["uploadId.part"] = b"123"
    assert upload.write_chunk(3, io.BytesIO(b"45")) == 2
    assert s3.uploaded == {1: b"1234", 2: b"5"}
    assert "uploadId.part" not in s3.objects


def test_write_chunk_prepends_and_writes_new_incomplete_part():
    s3, _, upload = make(**SMALL)
    s3.objects["uploadId.info"] = info_json(10)
    s3.objects["uploadId.part"] = b"123"
    assert upload.write_chunk(3, io.BytesIO(b"45")) == 2
    assert s3.uploaded == {1: b"1234"}
    assert s3.objects["uploadId.part"] == b"5"


def test_write_chunk_allows_too_small_last_part():
    s3, _, upload = make(min_part_size=20)
    s3.objects["uploadId.info"] = info_json(500)
    s3.pages = {None: ListPartsResult(parts=[ListedPart(1, 400, "etag-1"), ListedPart(2, 90, "etag-2")])}
    s3.head_error = S3Error("AccessDenied", "Access Denied.")
    assert upload.write_chunk(490, io.BytesIO(b"1234567890")) == 10
    assert s3.uploaded == {3: b"1234567890"}


def test_write_chunk_cleans_up_temp_files(tmp_path):
    seen = []

    def fail(part_number):
        seen.append(os.listdir(tmp_path))
        raise RuntimeError("not now")

    s3 = FakeS3()
    s3.upload_part_error = fail
    s3.objects["uploadId.info"] = info_json(14)
    _, _, upload = make(
        s3,
        max_part_size=10,
        min_part_size=10,
        preferred_part_size=10,
        temporary_directory=str(tmp_path),
    )
    with pytest.raises(RuntimeError, match="not now"):
        upload.write_chunk(0, io.BytesIO(b"1234567890ABCD"))
    assert len(seen) >= 1
    assert all(1 <= len(names) <= 3 for names in seen)
    assert all(name.startswith("tusd-s3-tmp-") for names in seen for name in names)
    assert os.listdir(tmp_path) == []


def test_terminate():
    s3, _, upload = make()
    upload.terminate()
    assert s3.aborted == [("uploadId", "multipartId")]
    assert s3.deleted_batches == [["uploadId", "uploadId.part", "uploadId.info"]]


def test_terminate_with_errors():
    s3, _, upload = make()
    s3.abort_error = NoSuchUpload()
    s3.delete_result = DeleteObjectsResult(
        errors=[DeleteError(code="hello", key="uploadId", message="it's me.")]
    )
    with pytest.raises(Exception) as caught:
        upload.terminate()
    assert str(caught.value) == "AWS S3 Error (hello) for object uploadId: it's me."
    assert not isinstance(caught.value, NoSuchUpload)
    assert s3.aborted == [("uploadId", "multipartId")]


def test_terminate_ignores_no_such_key_entries():
    s3, _, upload = make()
    s3.delete_result = DeleteObjectsResult(
        errors=[DeleteError(code="NoSuchKey", key="uploadId", message="gone")]
    )
    upload.terminate()
    assert len(s3.deleted_batches) == 1


def test_concat_uploads_using_multipart():
    s3, store, upload = make(min_part_size=100)
    upload.info = FileInfo(id="uploadId+multipartId", is_final=True,
                           partial_uploads=["aaa+AAA", "bbb+BBB", "ccc+CCC"])
    partials = [S3Upload(store, name, name.upper()) for name in ("aaa", "bbb", "ccc")]
    for partial in partials:
        partial.info = FileInfo(size=500)
    upload.concat_uploads(partials)
    assert sorted(s3.copies) == [(1, "bucket/aaa"), (2, "bucket/bbb"), (3, "bucket/ccc")]
    assert s3.completed[2] == [(1, "etag-1"), (2, "etag-2"), (3, "etag-3")]


def test_concat_uploads_using_download():
    s3, store, upload = make(min_part_size=100)
    s3.objects.update({"aaa": b"aaa", "bbb": b"bbbb", "ccc": b"ccccc"})
    partials = []
    for name, size in (("aaa", 3), ("bbb", 4), ("ccc", 5)):
        partial = S3Upload(store, name, name.upper())
        partial.info = FileInfo(size=size)
        partials.append(partial)
    upload.concat_uploads(partials)
    assert s3.objects["uploadId"] == b"aaabbbbccccc"
    deadline = time.monotonic() + 2
    while not s3.aborted and time.monotonic() < deadline:
        time.sleep(0.01)
    assert s3.aborted == [("uploadId", "multipartId")]