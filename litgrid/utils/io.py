import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Practical ceiling of a browser localStorage origin
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class QuotaExceededError(Exception):
    """Raised when a write would push the store past its size limit."""


# Key-value store with a hard size ceiling, counted over keys plus values
class KeyValueStore(ABC):

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES):
        self.max_bytes = max_bytes

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    # Bytes held by one stored value, without decoding it
    @abstractmethod
    def _value_size(self, key: str) -> int:
        ...

    def used_bytes(self, exclude: Optional[str] = None) -> int:
        total = 0
        for k in self.keys():
            if k == exclude:
                continue
            total += _size(k) + self._value_size(k)
        return total

    # Raise before writing if the new entry does not fit
    def _check_quota(self, key: str, value: str):
        needed = self.used_bytes(exclude=key) + _size(key) + _size(value)
        if needed > self.max_bytes:
            raise QuotaExceededError(
                f"Store quota exceeded: {needed} bytes needed, limit is {self.max_bytes}"
            )


def _size(value: str) -> int:
    return len(value.encode("utf-8"))


class MemoryStore(KeyValueStore):

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES):
        super().__init__(max_bytes)
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._check_quota(key, value)
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items.keys())

    def _value_size(self, key: str) -> int:
        return _size(self._items.get(key, ""))


# One <key>.json file per key under a root directory
class FileStore(KeyValueStore):

    def __init__(self, root: str, max_bytes: int = DEFAULT_MAX_BYTES):
        super().__init__(max_bytes)
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        self._check_quota(key, value)
        self.root.mkdir(parents=True, exist_ok=True)

        # Write to a temp file then swap into place
        tmp_path = self._path(key).with_suffix(".json.tmp")
        tmp_path.write_text(value, encoding="utf-8")
        os.replace(tmp_path, self._path(key))

    def remove_item(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return [p.stem for p in self.root.glob("*.json")]

    # Values are stored as UTF-8, so the file size is the value size
    def _value_size(self, key: str) -> int:
        try:
            return self._path(key).stat().st_size
        except FileNotFoundError:
            return 0


# Final Results JSON
def write_json(path: str, data: Dict[str, Any]):

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)

    logger.info("Wrote %s", path)
