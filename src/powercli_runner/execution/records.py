from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Iterator, Mapping, TypeVar

T = TypeVar("T")


class LookupStatus(str, Enum):
    """Outcome of a typed record field lookup.

    Example:
        ```python
        status = LookupStatus.ABSENT
        ```
    """

    PRESENT = "present"
    ABSENT = "absent"
    WRONG_TYPE = "wrong_type"


@dataclass(frozen=True, slots=True)
class Lookup(Generic[T]):
    """Typed field value with an explicit absent/wrong-type outcome.

    Example:
        ```python
        found = Lookup(LookupStatus.PRESENT, "8.0.2")
        ```
    """

    status: LookupStatus
    value: T | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        """Return True when the field exists with the expected type.

        Example:
            ```python
            if record.get_str("Version").ok:
                ...
            ```
        """
        return self.status is LookupStatus.PRESENT

    def or_default(self, default: T) -> T:
        """Return the value when present, else `default`.

        Example:
            ```python
            version = record.get_str("Version").or_default("Unknown")
            ```
        """
        if self.status is LookupStatus.PRESENT and self.value is not None:
            return self.value
        return default


def _absent(key: str) -> Lookup[Any]:
    """Build an ABSENT lookup for `key`.

    Example:
        ```python
        missing = _absent("Success")
        ```
    """
    return Lookup(LookupStatus.ABSENT, None, f"'{key}' is missing")


def _wrong(key: str, expected: str, value: Any) -> Lookup[Any]:
    """Build a WRONG_TYPE lookup describing the mismatch.

    Example:
        ```python
        bad = _wrong("Count", "int", "three")
        ```
    """
    return Lookup(
        LookupStatus.WRONG_TYPE,
        None,
        f"'{key}' is {type(value).__name__}, expected {expected}",
    )


class Record(Mapping[str, Any]):
    """Case-insensitive view over one object returned by a script.

    PowerShell property names are case-insensitive, so keys are matched
    without regard to case.

    Example:
        ```python
        record = Record({"Success": True, "Version": "8.0.2"})
        assert record.get_bool("success").value is True
        ```
    """

    def __init__(self, data: Mapping[str, Any]) -> None:
        """Wrap a decoded JSON object.

        Example:
            ```python
            record = Record({"Name": "VMware.Vim"})
            ```
        """
        self._data = dict(data)
        self._keys = {str(key).lower(): key for key in self._data}

    @classmethod
    def from_json(cls, text: str) -> "Record | None":
        """Decode a JSON object string; return None for anything else.

        Example:
            ```python
            record = Record.from_json('{"Success": true}')
            ```
        """
        try:
            decoded = json.loads(text)
        except (TypeError, ValueError):
            return None
        if isinstance(decoded, dict):
            return cls(decoded)
        return None

    def __getitem__(self, key: str) -> Any:
        """Return a raw value by case-insensitive key.

        Example:
            ```python
            raw = record["version"]
            ```
        """
        return self._data[self._keys[key.lower()]]

    def __iter__(self) -> Iterator[str]:
        """Iterate original key names.

        Example:
            ```python
            names = list(record)
            ```
        """
        return iter(self._data)

    def __len__(self) -> int:
        """Return the number of fields.

        Example:
            ```python
            count = len(record)
            ```
        """
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        """Return True when a field exists, ignoring case.

        Example:
            ```python
            "success" in record
            ```
        """
        return isinstance(key, str) and key.lower() in self._keys

    def _raw(self, key: str) -> tuple[bool, Any]:
        """Return (found, value), treating JSON null as absent.

        Example:
            ```python
            found, value = record._raw("Version")
            ```
        """
        original = self._keys.get(key.lower())
        if original is None:
            return False, None
        value = self._data[original]
        return value is not None, value

    def get_str(self, key: str) -> Lookup[str]:
        """Look up a string field; numbers are rendered as text.

        Example:
            ```python
            version = record.get_str("Version").or_default("Unknown")
            ```
        """
        found, value = self._raw(key)
        if not found:
            return _absent(key)
        if isinstance(value, str):
            return Lookup(LookupStatus.PRESENT, value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return Lookup(LookupStatus.PRESENT, str(value))
        return _wrong(key, "str", value)

    def get_bool(self, key: str) -> Lookup[bool]:
        """Look up a boolean field; accepts 'True'/'False' strings.

        Example:
            ```python
            success = record.get_bool("Success")
            ```
        """
        found, value = self._raw(key)
        if not found:
            return _absent(key)
        if isinstance(value, bool):
            return Lookup(LookupStatus.PRESENT, value)
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return Lookup(LookupStatus.PRESENT, value.strip().lower() == "true")
        return _wrong(key, "bool", value)

    def get_int(self, key: str) -> Lookup[int]:
        """Look up an integer field; accepts integral strings.

        Example:
            ```python
            count = record.get_int("Count").or_default(0)
            ```
        """
        found, value = self._raw(key)
        if not found:
            return _absent(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return Lookup(LookupStatus.PRESENT, value)
        if isinstance(value, str):
            try:
                return Lookup(LookupStatus.PRESENT, int(value.strip()))
            except ValueError:
                pass
        return _wrong(key, "int", value)

    def get_list(self, key: str) -> Lookup[list[Any]]:
        """Look up a list field; a scalar becomes a one-item list.

        PowerShell collapses single-item arrays during JSON conversion.

        Example:
            ```python
            errors = record.get_list("Errors").or_default([])
            ```
        """
        found, value = self._raw(key)
        if not found:
            return _absent(key)
        if isinstance(value, list):
            return Lookup(LookupStatus.PRESENT, value)
        return Lookup(LookupStatus.PRESENT, [value])

    def get_record(self, key: str) -> Lookup["Record"]:
        """Look up a nested object field.

        Example:
            ```python
            policies = record.get_record("Policies")
            ```
        """
        found, value = self._raw(key)
        if not found:
            return _absent(key)
        if isinstance(value, dict):
            return Lookup(LookupStatus.PRESENT, Record(value))
        return _wrong(key, "object", value)

    def to_dict(self) -> dict[str, Any]:
        """Return a shallow copy of the underlying data.

        Example:
            ```python
            payload = record.to_dict()
            ```
        """
        return dict(self._data)


def records_of(items: list[Any]) -> list[Record]:
    """Return `Record` views for every dict in a decoded JSON list.

    Example:
        ```python
        modules = records_of(json.loads(text))
        ```
    """
    return [Record(item) for item in items if isinstance(item, dict)]
