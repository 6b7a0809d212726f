from typing import Any, Optional
from collections.abc import Iterator, Mapping, MutableMapping
import orjson


class SecretFields(MutableMapping[str, str]):
    """Dict-like holder for decrypted secret fields.

    Values are plain strings (API keys, client secrets, private keys).
    ``repr``/``str`` only ever show field names, so a SecretFields that
    ends up in a log line or a traceback does not leak its values.
    """

    __slots__ = ('_data',)

    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        object.__setattr__(self, '_data', {})
        if data is not None:
            for key, value in data.items():
                self[key] = value

    def __repr__(self) -> str:
        return f'<SecretFields fields={sorted(self._data)!r}>'

    __str__ = __repr__

    # --- Validation helpers ---

    @staticmethod
    def _check_key(key: Any) -> str:
        if not isinstance(key, str) or not key:
            raise ValueError("Secret field names must be non-empty strings")
        if len(key) > 255:
            raise ValueError("Secret field names cannot exceed 255 characters")
        return key

    @staticmethod
    def _check_value(key: str, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError(
                f"Secret field {key!r} must be a string, got {type(value).__name__}"
            )
        return value

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        key = self._check_key(key)
        self._data[key] = self._check_value(key, value)

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError("SecretFields only supports item assignment")

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretFields):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    @property
    def empty(self) -> bool:
        return not bool(self._data)

    def reveal(self) -> dict[str, str]:
        """Return a plain dict copy of the values.

        Only for building a response to an authorized reader.
        """
        return dict(self._data)

    def encode(self) -> bytes:
        """encode

            Serialize the fields to bytes for encryption.
        Raises:
            ValueError: Error converting the fields to json.

        Returns:
            bytes: orjson-encoded object, keys sorted.
        """
        try:
            return orjson.dumps(self._data, option=orjson.OPT_SORT_KEYS)
        except orjson.JSONEncodeError as err:
            raise ValueError(str(err)) from err

    @classmethod
    def decode(cls, data: bytes) -> "SecretFields":
        """decode.

            Rebuild SecretFields from decrypted bytes.
        Raises:
            ValueError: If data is not a JSON object of string values.
        """
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as err:
            raise ValueError("Decrypted payload is not valid JSON") from err
        if not isinstance(parsed, dict):
            raise ValueError("Decrypted payload is not a JSON object")
        return cls(parsed)
