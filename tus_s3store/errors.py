"""Errors raised by the S3 upload store and by the S3 service it talks to."""

from __future__ import annotations

from collections.abc import Iterator, Mapping


class TusError(Exception):
    """An error that carries a tus error code and an HTTP status for the client."""

    def __init__(self, code: str, message: str, status: int) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status = status

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class UploadNotFoundError(TusError):
    """The requested upload does not exist."""

    def __init__(self) -> None:
        super().__init__("ERR_UPLOAD_NOT_FOUND", "upload not found", 404)


class IncompleteUploadError(TusError):
    """A client attempted to download an upload that is not finished yet."""

    def __init__(self) -> None:
        super().__init__("ERR_INCOMPLETE_UPLOAD", "cannot stream non-finished upload", 400)


class S3Error(Exception):
    """An error reported by the S3 service, identified by its error code."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return f"api error {self.code}: {self.message}"
        return f"api error {self.code}"


class NoSuchKey(S3Error):
    """The requested object does not exist."""

    def __init__(self, message: str = "") -> None:
        super().__init__("NoSuchKey", message)


class NoSuchUpload(S3Error):
    """The requested multipart upload does not exist."""

    def __init__(self, message: str = "") -> None:
        super().__init__("NoSuchUpload", message)


class NotFound(S3Error):
    """The object queried by a HEAD request does not exist."""

    def __init__(self, message: str = "") -> None:
        super().__init__("NotFound", message)


class ResponseError(S3Error):
    """An S3 request failed with an HTTP response; status and headers are kept."""

    def __init__(
        self,
        status_code: int,
        headers: Mapping[str, str] | None = None,
        code: str = "",
        message: str = "",
    ) -> None:
        super().__init__(code, message)
        self.status_code = status_code
        self.headers = dict(headers or {})

    def header(self, name: str) -> str:
        """Return the value of a response header, ignoring case, or ''."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return ""

    def __str__(self) -> str:
        text = f"http response error StatusCode: {self.status_code}"
        if self.code:
            text += f", {super().__str__()}"
        return text


def _error_chain(error: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        yield error
        error = error.__cause__ if error.__cause__ is not None else error.__context__


def is_aws_error_code(error: BaseException | None, code: str) -> bool:
    """Tell whether the first S3 error in the exception chain has the given code."""
    for item in _error_chain(error):
        if isinstance(item, S3Error):
            return item.code == code
    return False