# tus_s3store

A storage backend for resumable, tus-style uploads that keeps the data in S3 or any
S3-compatible service.

Each upload is stored as an S3 multipart upload. Alongside it, a JSON `.info` object
holds the upload's size, offset and metadata. Data that is too small to be sent as a
full multipart part (and is not the last part of the upload) is parked in a `.part`
object and put in front of the next chunk that is written.

## Installation

```
pip install tus_s3store
```

The package has no runtime dependencies. You pass the store an object that implements
the `tus_s3store.s3api.S3API` protocol, a thin wrapper around the S3 client of your
choice. Its methods return the result types from the same module (`ListPartsResult`,
`GetObjectResult`, `HeadObjectResult`, `DeleteObjectsResult`, ...) and raise
`tus_s3store.errors.S3Error` or one of its subclasses (`NoSuchKey`, `NoSuchUpload`,
`NotFound`, `ResponseError`) when the service reports an error.

## Usage

```python
from tus_s3store.fileinfo import FileInfo
from tus_s3store.store import S3Store

store = S3Store("my-bucket", service)          # service implements S3API
store.object_prefix = "uploads"

upload = store.new_upload(FileInfo(size=1024, meta_data={"filetype": "text/plain"}))
info = upload.get_info()

with open("data.bin", "rb") as fh:
    written = upload.write_chunk(info.offset, fh)

upload.finish_upload()
```

`new_upload` uses `info.id` as the object key when it is set and a random hex ID
otherwise. The upload's full ID is `"<object id>+<multipart id>"`, and an existing
upload can be looked up again by it without contacting S3:

```python
upload = store.get_upload(info.id)
reader = upload.get_reader()
```

Metadata values are attached to the multipart upload with every character outside
printable ASCII (and tab) replaced by `?`; the `.info` object keeps them unchanged.
A `filetype` metadata entry becomes the object's content type.

### Other operations

- `store.as_terminatable_upload(upload).terminate()` aborts the multipart upload and
  deletes the data, `.part` and `.info` objects.
- `store.as_length_declarable_upload(upload).declare_length(n)` sets the size of an
  upload that was created with a deferred length and rewrites its `.info` object.
- `store.as_concatable_upload(final).concat_uploads([a, b, c])` joins finished partial
  uploads, copying them as parts on the server when every one of them is at least
  `min_part_size` bytes, and downloading and re-uploading them otherwise.
- `tus_s3store.serve_content.serve_content(upload, request_headers)` fetches the
  finished object and returns a `ServedContent` with the status, headers and body.
  `Range`, `If-Match`, `If-None-Match`, `If-Modified-Since` and `If-Unmodified-Since`
  are passed through to S3; 304 and 416 answers from S3 are turned into responses,
  and a 403 or 404 raises `IncompleteUploadError`.

### Settings

`S3Store` is a `tus_s3store.settings.StoreSettings`, so these attributes can be changed
on the instance:

| attribute | default |
|---|---|
| `object_prefix` | `""` |
| `metadata_object_prefix` (falls back to `object_prefix`) | `""` |
| `min_part_size` | 5 MiB |
| `preferred_part_size` | 50 MiB |
| `max_part_size` | 5 GiB |
| `max_multipart_parts` | 10000 |
| `max_object_size` | 5 TiB |
| `max_buffered_parts` | 20 |
| `temporary_directory` (`""` means the system default) | `""` |
| `disable_content_hashes` | `False` |

`store.set_concurrent_part_uploads(limit)` changes how many parts are sent to S3 at
once (10 by default).

Incoming data is cut into parts in temporary files named `tusd-s3-tmp-*`, which are
removed once the part has been sent. With the environment variable
`TUSD_S3STORE_TEMP_MEMORY=1` the parts are held in memory instead.

With `disable_content_hashes` set, parts are sent with a plain HTTP `PUT` to a URL
obtained from the service's `presign_upload_part(bucket, key, upload_id, part_number,
expires_seconds)` method; the service must provide that method.

### Part sizes

`tus_s3store.partsize.calc_optimal_part_size` (also available as
`store.calc_optimal_part_size(size)`) chooses a part size so that an upload fits within
the maximum number of multipart parts. It raises `PartSizeError` if that would need
parts larger than the maximum part size.

### Errors

Failures are raised as exceptions. From `tus_s3store.errors`, `UploadNotFoundError`
means the upload does not exist and `IncompleteUploadError` means the upload has not
finished yet; both are `TusError`s carrying a `code`, a `message` and an HTTP
`status`. `new_upload` raises `ValueError` for uploads larger than `max_object_size`.

## What this package does not do

It is a storage layer only. It does not speak the tus HTTP protocol, run a server,
lock uploads against concurrent access, or ship an S3 client: you supply the object
implementing `S3API` and the code that turns HTTP requests into calls on the store.

## Running the tests

```
pip install -e .[test]
pytest
```