"""Wire-format encoders and decoders used inside connectors.

The broker never touches bytes. Each connector is handed a codec for its
provider's wire format and uses it to turn responses into record mappings
and submissions into request bodies.

Example:
    codec = JsonCodec(data_path="data.items")
    codec.decode(b'{"data": {"items": [{"isbn": "978-0142437247"}]}}')
    # [{'isbn': '978-0142437247'}]
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

from databroker.lib.errors import FormatError, NoSuchRecordError

logger = logging.getLogger(__name__)

__all__ = ["Codec", "JsonCodec"]


class Codec(ABC):
    """Encoder/decoder pair for one wire format.

    Encoding many records is not always the concatenation of encoding
    each one (a JSON array is not a run of JSON objects), so both forms
    are part of the contract.
    """

    wire_format: str = "binary"
    content_type: str = "application/octet-stream"

    @abstractmethod
    def encode(self, record: Mapping[str, Any]) -> bytes:
        """Encode a single record.

        Raises:
            FormatError: If the record cannot be represented
        """
        ...

    @abstractmethod
    def encode_all(self, records: Iterable[Mapping[str, Any]]) -> bytes:
        """Encode a batch of records as one payload."""
        ...

    @abstractmethod
    def decode(self, payload: bytes) -> List[Dict[str, Any]]:
        """Decode every record in a payload.

        Raises:
            FormatError: If the payload is malformed
        """
        ...

    def decode_optional(self, payload: bytes) -> Optional[Dict[str, Any]]:
        """First record in a payload, or None when it holds none."""
        records = self.decode(payload)
        return records[0] if records else None

    def decode_one(self, payload: bytes) -> Dict[str, Any]:
        """Exactly one record.

        Raises:
            NoSuchRecordError: If the payload is empty
        """
        record = self.decode_optional(payload)
        if record is None:
            raise NoSuchRecordError(f"{self.wire_format} payload contains no record")
        return record

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class JsonCodec(Codec):
    """JSON codec.

    Accepts a top-level list, a single object, or a list nested under a
    dotted ``data_path`` such as ``"data.items"``.
    """

    wire_format = "json"
    content_type = "application/json"

    def __init__(self, data_path: Optional[str] = None, *, encoding: str = "utf-8") -> None:
        self.data_path = data_path
        self.encoding = encoding

    def _dump(self, value: Any) -> bytes:
        try:
            return json.dumps(value, default=str, ensure_ascii=False).encode(self.encoding)
        except (TypeError, ValueError) as e:
            raise FormatError("Cannot encode record as JSON", wire_format=self.wire_format, cause=e) from e

    def encode(self, record: Mapping[str, Any]) -> bytes:
        return self._dump(dict(record))

    def encode_all(self, records: Iterable[Mapping[str, Any]]) -> bytes:
        return self._dump([dict(r) for r in records])

    def decode(self, payload: bytes) -> List[Dict[str, Any]]:
        if not payload or not payload.strip():
            return []
        try:
            data = json.loads(payload.decode(self.encoding) if isinstance(payload, bytes) else payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FormatError("Malformed JSON payload", wire_format=self.wire_format, cause=e) from e

        if self.data_path:
            for key in self.data_path.split("."):
                if not isinstance(data, dict) or key not in data:
                    raise FormatError(
                        f"Cannot navigate path '{self.data_path}' in response",
                        wire_format=self.wire_format,
                        details={"missing_key": key},
                    )
                data = data[key]

        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            bad = [type(item).__name__ for item in data if not isinstance(item, dict)]
            if bad:
                raise FormatError(
                    "JSON list holds non-object entries",
                    wire_format=self.wire_format,
                    details={"entry_types": ", ".join(sorted(set(bad)))},
                )
            return data
        raise FormatError(
            f"Expected a JSON object or list, got {type(data).__name__}",
            wire_format=self.wire_format,
        )

    def __repr__(self) -> str:
        return f"JsonCodec(data_path={self.data_path!r})"
