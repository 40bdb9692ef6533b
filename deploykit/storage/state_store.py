"""
Key-value state stores for the safety core.

Managers keep their state behind a small repository interface so the
bookkeeping logic does not care whether state lives in process memory or on
disk. Keys are stable identifiers (deployment ids, stage names).
"""
import json
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StateStore(Generic[T]):
    """Repository interface: stable string key -> state object"""

    def get(self, key: str) -> Optional[T]:
        raise NotImplementedError

    def put(self, key: str, value: T) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if something was removed."""
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def items(self) -> Iterator:
        for key in self.keys():
            value = self.get(key)
            if value is not None:
                yield key, value


class InMemoryStateStore(StateStore[T]):
    """
    Per-process store. Values are held by reference, so a manager that
    mutates a fetched state and puts it back sees the same object.
    """

    def __init__(self):
        self._data: Dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        return self._data.get(key)

    def put(self, key: str, value: T) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStateStore(StateStore[T]):
    """
    One JSON document per key inside a directory.

    The file name is produced from ``filename_template`` (``{key}`` is
    substituted), which lets the lock manager keep the
    ``.deployment-lock-<stage>`` naming while rollout state uses
    ``<deployment_id>.json``. Writes go to a temporary file first and are
    moved into place, so a reader never sees a half-written record.
    """

    def __init__(self,
                 storage_path: Path,
                 serializer: Callable[[T], Dict[str, Any]],
                 deserializer: Callable[[Dict[str, Any]], T],
                 filename_template: str = "{key}.json"):
        if "{key}" not in filename_template:
            raise ValueError("filename_template must contain '{key}'")

        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.filename_template = filename_template
        self._serializer = serializer
        self._deserializer = deserializer

        prefix, _, suffix = filename_template.partition("{key}")
        self._prefix = prefix
        self._suffix = suffix

    def path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Unsafe state key: {key!r}")
        return self.storage_path / self.filename_template.format(key=key)

    def get(self, key: str) -> Optional[T]:
        file_path = self.path_for(key)
        if not file_path.exists():
            return None

        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
            return self._deserializer(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load state from {file_path}: {e}")
            return None

    def put(self, key: str, value: T) -> None:
        file_path = self.path_for(key)
        tmp_path = file_path.with_name(file_path.name + ".tmp")

        try:
            with open(tmp_path, 'w') as f:
                json.dump(self._serializer(value), f, indent=2)
            os.replace(tmp_path, file_path)
        except Exception as e:
            logger.error(f"Failed to persist state for key={key}: {e}")
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Persisted state for key={key} to {file_path}")

    def delete(self, key: str) -> bool:
        file_path = self.path_for(key)
        try:
            file_path.unlink()
        except FileNotFoundError:
            return False

        logger.debug(f"Deleted state for key={key}")
        return True

    def keys(self) -> List[str]:
        found = []
        for file_path in sorted(self.storage_path.iterdir()):
            name = file_path.name
            if not file_path.is_file() or name.endswith(".tmp"):
                continue
            if not (name.startswith(self._prefix) and name.endswith(self._suffix)):
                continue
            key = name[len(self._prefix):len(name) - len(self._suffix)] if self._suffix else name[len(self._prefix):]
            if key and _SAFE_KEY.match(key):
                found.append(key)
        return found
