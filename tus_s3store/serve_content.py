"""Serving the content of a finished upload straight from S3."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any

from .errors import IncompleteUploadError, ResponseError

_NOT_MODIFIED_HEADERS = ("Content-Location", "Date", "ETag", "Vary", "Cache-Control", "Expires")


@dataclass
class ServedContent:
    """The response to send for a content request."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


def _parse_http_time(value: str) -> datetime | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_http_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _response_error(error: BaseException | None) -> ResponseError | None:
    seen: set[int] = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, ResponseError):
            return error
        seen.add(id(error))
        error = error.__cause__ if error.__cause__ is not None else error.__context__
    return None


def serve_content(upload: Any, request_headers: Mapping[str, str]) -> ServedContent:
    """Fetch the upload's object, forwarding range and conditional request headers."""
    options: dict[str, Any] = {}
    for header, option in (
        ("Range", "range"),
        ("If-Match", "if_match"),
        ("If-None-Match", "if_none_match"),
    ):
        value = _header(request_headers, header)
        if value:
            options[option] = value
    for header, option in (
        ("If-Modified-Since", "if_modified_since"),
        ("If-Unmodified-Since", "if_unmodified_since"),
    ):
        value = _header(request_headers, header)
        if value:
            parsed = _parse_http_time(value)
            if parsed is not None:
                options[option] = parsed

    store = upload.store
    try:
        result = store.service.get_object(
            store.bucket, store.key_with_prefix(upload.object_id), **options
        )
    except Exception as exc:
        response = _response_error(exc)
        if response is None:
            raise
        if response.status_code in (404, 403):
            # The handler already knows the upload exists, so it is unfinished.
            raise IncompleteUploadError() from exc
        if response.status_code == 304:
            headers = {
                name: response.header(name)
                for name in _NOT_MODIFIED_HEADERS
                if response.header(name)
            }
            return ServedContent(304, headers)
        if response.status_code == 416:
            headers = {}
            if response.header("Content-Range"):
                headers["Content-Range"] = response.header("Content-Range")
            return ServedContent(416, headers)
        raise

    try:
        headers: dict[str, str] = {}
        for name, value in (
            ("Accept-Ranges", result.accept_ranges),
            ("Content-Disposition", result.content_disposition),
            ("Content-Encoding", result.content_encoding),
            ("Content-Language", result.content_language),
            (
                "Content-Length",
                None if result.content_length is None else str(result.content_length),
            ),
            ("Content-Range", result.content_range),
            ("Content-Type", result.content_type),
            ("Cache-Control", result.cache_control),
            ("ETag", result.etag),
            ("Expires", result.expires),
        ):
            if value is not None:
                headers[name] = value
        if result.last_modified is not None:
            headers["Last-Modified"] = _format_http_time(result.last_modified)

        status = 200
        if result.content_range is not None:
            status = 206
        elif result.content_length == 0:
            status = 204

        body = result.body.read()
    finally:
        close = getattr(result.body, "close", None)
        if close is not None:
            close()
    return ServedContent(status, headers, body)