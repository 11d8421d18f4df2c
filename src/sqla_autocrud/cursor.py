from __future__ import annotations

import base64
import binascii
import datetime as dt
import decimal
import json
import math
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from .errors import CursorError


_ENCODERS: Final[tuple[tuple[type, str, Callable[[Any], Any]], ...]] = (
    # bool before int, datetime before date
    (bool, "bool", bool),
    (int, "int", int),
    (float, "float", float),
    (decimal.Decimal, "decimal", str),
    (dt.datetime, "datetime", lambda value: value.isoformat()),
    (dt.date, "date", lambda value: value.isoformat()),
    (dt.time, "time", lambda value: value.isoformat()),
    (uuid.UUID, "uuid", str),
    (bytes, "bytes", lambda value: base64.b64encode(value).decode("ascii")),
    (str, "str", str),
)

_DECODERS: Final[Mapping[str, Callable[[Any], Any]]] = {
    "null": lambda value: None,
    "bool": lambda value: _expect(value, bool),
    "int": lambda value: _expect(value, int),
    "float": lambda value: float(_expect(value, (int, float))),
    "decimal": lambda value: decimal.Decimal(_expect(value, str)),
    "datetime": lambda value: dt.datetime.fromisoformat(_expect(value, str)),
    "date": lambda value: dt.date.fromisoformat(_expect(value, str)),
    "time": lambda value: dt.time.fromisoformat(_expect(value, str)),
    "uuid": lambda value: uuid.UUID(_expect(value, str)),
    "bytes": lambda value: base64.b64decode(_expect(value, str), validate=True),
    "str": lambda value: _expect(value, str),
}


_REQUIRED_KEYS: Final[frozenset[str]] = frozenset({"c", "d", "t", "v"})
_ALLOWED_KEYS: Final[frozenset[str]] = _REQUIRED_KEYS | {"p"}


def _expect(value: Any, types: type | tuple[type, ...]) -> Any:
    if not isinstance(value, types) or (types is int and isinstance(value, bool)):
        raise ValueError(value)
    return value


def _b64encode(payload: bytes) -> str:
    return base64.urlsafe_b64encode(payload).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


@dataclass(slots=True, frozen=True)
class CursorCodec:
    """Opaque keyset cursors bound to one (table, column, direction) triple.

    With *tiebreak* columns (the primary key, for a sort column that is not
    unique) the cursor also carries their values, so rows sharing a sort
    value are neither skipped nor repeated across pages.

    A cursor is URL-safe base64 (unpadded) over a canonical JSON envelope, so
    equal values always produce the same token and
    ``codec.encode(codec.decode(token)) == token`` holds for every token the
    codec issued.

    Example:
        >>> codec = CursorCodec("orders", "id", descending=False)
        >>> codec.decode(codec.encode(42))
        42
    """

    table: str
    column: str
    descending: bool = False
    tiebreak: tuple[str, ...] = ()

    @property
    def direction(self) -> str:
        return "desc" if self.descending else "asc"

    def encode(self, value: Any, tiebreak_values: Sequence[Any] = ()) -> str:
        """Encode a sort-key *value* (and the tiebreak values) into a cursor token.

        Raises:
            CursorError: If the value type cannot be carried by a cursor, or
                the tiebreak values do not match the tiebreak columns.
        """
        if len(tiebreak_values) != len(self.tiebreak):
            raise CursorError(
                f"Expected {len(self.tiebreak)} tiebreak values, got {len(tiebreak_values)}"
            )
        envelope: dict[str, Any] = {
            "c": self.column,
            "d": self.direction,
            "t": self.table,
            "v": self._encode_value(value),
        }
        if self.tiebreak:
            envelope["p"] = [self._encode_value(part) for part in tiebreak_values]
        payload = json.dumps(envelope, sort_keys=True, separators=(",", ":"), allow_nan=False)
        return _b64encode(payload.encode("utf-8"))

    def encode_row(self, row: Mapping[str, Any]) -> str:
        return self.encode(row[self.column], [row[name] for name in self.tiebreak])

    def decode(self, token: str) -> Any:
        return self.decode_key(token)[0]

    def decode_key(self, token: str) -> tuple[Any, tuple[Any, ...]]:
        """Decode *token* back into the sort-key value and the tiebreak values.

        Raises:
            CursorError: For malformed tokens, or tokens issued for another
                table, sort column or direction.
        """
        if not token or not token.strip():
            raise CursorError("Cursor cannot be empty")
        try:
            envelope = json.loads(_b64decode(token.strip()).decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError):
            raise CursorError("Malformed cursor") from None

        if not isinstance(envelope, dict) or not _REQUIRED_KEYS <= set(envelope) <= _ALLOWED_KEYS:
            raise CursorError("Malformed cursor")

        issued_for = (envelope["t"], envelope["c"], envelope["d"])
        if issued_for != (self.table, self.column, self.direction):
            raise CursorError(
                f"Cursor was issued for {issued_for[0]}.{issued_for[1]} {issued_for[2]}, "
                f"not {self.table}.{self.column} {self.direction}"
            )
        parts = envelope.get("p", [])
        if ("p" in envelope) != bool(self.tiebreak) or not isinstance(parts, list):
            raise CursorError("Malformed cursor")
        if len(parts) != len(self.tiebreak):
            raise CursorError(f"Cursor carries {len(parts)} tiebreak values, expected {len(self.tiebreak)}")
        return self._decode_value(envelope["v"]), tuple(self._decode_value(part) for part in parts)

    @staticmethod
    def _encode_value(value: Any) -> dict[str, Any]:
        if value is None:
            return {"k": "null"}
        for type_, kind, encoder in _ENCODERS:
            if isinstance(value, type_):
                try:
                    encoded = encoder(value)
                except (ValueError, OverflowError):
                    break
                if kind == "float" and not math.isfinite(encoded):
                    break
                return {"k": kind, "v": encoded}
        raise CursorError(f"Cannot build a cursor from a {type(value).__name__} value")

    @staticmethod
    def _decode_value(raw: Any) -> Any:
        if not isinstance(raw, dict) or "k" not in raw:
            raise CursorError("Malformed cursor value")
        decoder = _DECODERS.get(raw["k"])
        if decoder is None or (raw["k"] != "null" and "v" not in raw):
            raise CursorError("Malformed cursor value")
        try:
            return decoder(raw.get("v"))
        except (ValueError, TypeError, ArithmeticError, binascii.Error):
            raise CursorError("Malformed cursor value") from None
