"""
Storage backends for configuration and saved pipeline chains.
"""

import copy
import hashlib
import logging
import os
from pathlib import Path
import re
import typing

import orjson


logger = logging.getLogger(__name__)

__all__ = [
    "StorageBackend",
    "InMemoryStorage",
    "JSONFileStorage",
]


class StorageBackend:
    """Keyed dictionary store shared by configurations and saved chains"""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def get_key(self, key: str, *args, **kwargs) -> str:
        base_key = f"{self.namespace}:{key}"
        if args or kwargs:
            hash_input = str(args) + str(sorted(kwargs.items()))
            hash_suffix = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
            return f"{base_key}:{hash_suffix}"
        return base_key

    def read(self, key: str) -> typing.Optional[dict]:
        raise NotImplementedError

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        raise NotImplementedError

    def create(self, key: str, data: dict) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> typing.List[str]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.read(key) is not None


class InMemoryStorage(StorageBackend):
    """In-memory storage backend. Entries are copied on the way in and out."""

    def __init__(
        self,
        namespace: str,
        *,
        defaults: typing.Optional[dict] = None,
    ):
        super().__init__(namespace)
        self._store: typing.Dict[str, dict] = copy.deepcopy(defaults or {})

    def read(self, key: str) -> typing.Optional[dict]:
        logger.debug(f"{self.namespace}: read {key!r}")
        entry = self._store.get(key)
        return copy.deepcopy(entry) if entry is not None else None

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        logger.debug(f"{self.namespace}: update {key!r}")
        if key not in self._store:
            raise KeyError(f"No stored entry under {key!r}")
        if overwrite:
            self._store[key] = copy.deepcopy(data)
            return
        self._store[key].update(copy.deepcopy(data))

    def create(self, key: str, data: dict) -> None:
        logger.debug(f"{self.namespace}: create {key!r}")
        if key in self._store:
            raise KeyError(f"An entry is already stored under {key!r}")
        self._store[key] = copy.deepcopy(data)

    def delete(self, key: str) -> None:
        logger.debug(f"{self.namespace}: delete {key!r}")
        if key not in self._store:
            raise KeyError(f"No stored entry under {key!r}")
        del self._store[key]

    def keys(self) -> typing.List[str]:
        return list(self._store)


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JSONFileStorage(StorageBackend):
    """JSON file storage backend. One file per key, written atomically."""

    def __init__(self, storage_dir: typing.Union[str, Path], namespace: str):
        super().__init__(namespace)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(
            f"Initialized {self.__class__.__name__} with storage directory: {storage_dir}"
        )

    def _get_file_path(self, key: str) -> Path:
        return self.storage_dir / f"{_UNSAFE_FILENAME_CHARS.sub('_', key)}.json"

    def _write(self, file_path: Path, data: dict) -> None:
        tmp_path = file_path.with_suffix(".json.tmp")
        with tmp_path.open("wb") as f:
            f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))
        os.replace(tmp_path, file_path)

    def read(self, key: str) -> typing.Optional[dict]:
        logger.debug(f"{self.namespace}: read {key!r}")
        file_path = self._get_file_path(key)
        if not file_path.exists():
            return None

        with file_path.open("rb") as f:
            return orjson.loads(f.read())

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        logger.debug(f"{self.namespace}: update {key!r}")
        file_path = self._get_file_path(key)
        if not file_path.exists():
            raise KeyError(f"No stored entry under {key!r}")

        if not overwrite:
            existing_data = self.read(key) or {}
            existing_data.update(data)
            data = existing_data
        self._write(file_path, data)

    def create(self, key: str, data: dict) -> None:
        logger.debug(f"{self.namespace}: create {key!r}")
        file_path = self._get_file_path(key)
        if file_path.exists():
            raise KeyError(f"An entry is already stored under {key!r}")
        self._write(file_path, data)

    def delete(self, key: str) -> None:
        logger.debug(f"{self.namespace}: delete {key!r}")
        file_path = self._get_file_path(key)
        if not file_path.exists():
            raise KeyError(f"No stored entry under {key!r}")
        file_path.unlink()

    def keys(self) -> typing.List[str]:
        """File stems of the stored entries (sanitized keys)."""
        return sorted(path.stem for path in self.storage_dir.glob("*.json"))
