from __future__ import annotations

import asyncio
import copy
import hashlib
import json
from pathlib import Path
from typing import Any, Protocol

from tangotales.config import settings
from tangotales.errors import SubjectNotFoundError, SubjectStoreError
from tangotales.services.logger import log_store_operation


class SubjectStore(Protocol):
    async def get(self, subject_id: str) -> dict[str, Any] | None: ...
    async def update(self, subject_id: str, partial: dict[str, Any]) -> None: ...
    async def create(self, record: dict[str, Any]) -> None: ...


def _merge(existing: dict[str, Any], partial: dict[str, Any]) -> dict[str, Any]:
    merged = dict(existing)
    merged.update(copy.deepcopy(partial))
    return merged


class InMemorySubjectStore:
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def get(self, subject_id: str) -> dict[str, Any] | None:
        record = self._records.get(subject_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, subject_id: str, partial: dict[str, Any]) -> None:
        if subject_id not in self._records:
            raise SubjectNotFoundError(subject_id)
        self._records[subject_id] = _merge(self._records[subject_id], partial)

    async def create(self, record: dict[str, Any]) -> None:
        subject_id = record.get("id")
        if not subject_id:
            raise SubjectStoreError("Record needs an 'id'")
        self._records.setdefault(subject_id, copy.deepcopy(record))


class JsonFileSubjectStore:
    """One JSON document per subject under ``base_dir``."""

    def __init__(self, *, base_dir: str | None = None):
        self.base_dir = Path(base_dir or settings.store_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, subject_id: str) -> Path:
        key = hashlib.sha1(subject_id.encode("utf-8")).hexdigest()
        return self.base_dir / f"{key}.json"

    def _read(self, subject_id: str) -> dict[str, Any] | None:
        path = self._path(subject_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SubjectStoreError(f"Unreadable subject file {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SubjectStoreError(f"Subject file must hold a JSON object: {path}")
        return payload

    def _write(self, subject_id: str, record: dict[str, Any]) -> None:
        path = self._path(subject_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        tmp.replace(path)

    async def get(self, subject_id: str) -> dict[str, Any] | None:
        async with self._lock:
            return self._read(subject_id)

    async def update(self, subject_id: str, partial: dict[str, Any]) -> None:
        async with self._lock:
            existing = self._read(subject_id)
            if existing is None:
                raise SubjectNotFoundError(subject_id)
            self._write(subject_id, _merge(existing, partial))
        log_store_operation("update", subject_id, "success", details=",".join(sorted(partial)))

    async def create(self, record: dict[str, Any]) -> None:
        subject_id = record.get("id")
        if not subject_id:
            raise SubjectStoreError("Record needs an 'id'")
        async with self._lock:
            if self._read(subject_id) is None:
                self._write(subject_id, record)
        log_store_operation("create", subject_id, "success")


_store: SubjectStore | None = None


def get_subject_store() -> SubjectStore:
    global _store
    if _store is None:
        backend = settings.store_backend.lower().strip()
        if backend == "json":
            _store = JsonFileSubjectStore()
        elif backend == "memory":
            _store = InMemorySubjectStore()
        else:
            raise ValueError(f"Unsupported STORE_BACKEND: {settings.store_backend}")
    return _store
