"""Description of an upload, stored as a JSON info object next to the data."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

_GO_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _escape(text: str) -> str:
    for char, replacement in _GO_ESCAPES.items():
        text = text.replace(char, replacement)
    return text


def _sorted(mapping: dict[str, str] | None) -> dict[str, str] | None:
    if mapping is None:
        return None
    return {key: mapping[key] for key in sorted(mapping)}


@dataclass
class FileInfo:
    """General information about an upload."""

    id: str = ""
    size: int = 0
    size_is_deferred: bool = False
    offset: int = 0
    meta_data: dict[str, str] | None = None
    is_partial: bool = False
    is_final: bool = False
    partial_uploads: list[str] | None = None
    storage: dict[str, str] | None = None

    def to_json(self) -> bytes:
        """Encode as compact UTF-8 JSON with sorted map keys and HTML-safe escapes."""
        document = {
            "ID": self.id,
            "Size": self.size,
            "SizeIsDeferred": self.size_is_deferred,
            "Offset": self.offset,
            "MetaData": _sorted(self.meta_data),
            "IsPartial": self.is_partial,
            "IsFinal": self.is_final,
            "PartialUploads": None if self.partial_uploads is None else list(self.partial_uploads),
            "Storage": _sorted(self.storage),
        }
        text = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        return _escape(text).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> FileInfo:
        """Decode an info object; missing fields take their zero values."""
        raw: Any = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("file info must be a JSON object")
        fields = {key.lower(): value for key, value in raw.items()}

        def get(name: str, default: Any) -> Any:
            value = fields.get(name.lower())
            return default if value is None else value

        meta = fields.get("metadata")
        storage = fields.get("storage")
        partials = fields.get("partialuploads")
        return cls(
            id=get("ID", ""),
            size=int(get("Size", 0)),
            size_is_deferred=bool(get("SizeIsDeferred", False)),
            offset=int(get("Offset", 0)),
            meta_data=None if meta is None else dict(meta),
            is_partial=bool(get("IsPartial", False)),
            is_final=bool(get("IsFinal", False)),
            partial_uploads=None if partials is None else list(partials),
            storage=None if storage is None else dict(storage),
        )