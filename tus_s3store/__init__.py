"""Storage of resumable uploads in S3 or S3-compatible object stores."""

__version__ = "0.1.0"
__all__ = [
    "errors",
    "fileinfo",
    "partsize",
    "s3api",
    "settings",
    "part_producer",
    "upload",
    "store",
    "serve_content",
]