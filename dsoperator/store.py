"""In-memory object store with API-server style create, update and delete semantics."""

from __future__ import annotations

import copy
import itertools
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Union

from .types import Dataset

DATASET = "Dataset"
CONFIG_MAP = "ConfigMap"
PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
PERSISTENT_VOLUME = "PersistentVolume"
JOB = "Job"
NAMESPACE = "Namespace"

CLUSTER_SCOPED_KINDS = frozenset({PERSISTENT_VOLUME, NAMESPACE})

StoredObject = Union[Dataset, dict]


class ApiError(Exception):
    """A request to the object store failed."""

    def __init__(self, message: str, kind: str = "", namespace: str = "", name: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.namespace = namespace
        self.name = name


class NotFoundError(ApiError):
    """The requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{kind} "{where}" not found', kind, namespace, name)


class AlreadyExistsError(ApiError):
    """An object with the same identity already exists."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{kind} "{where}" already exists', kind, namespace, name)


def _format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _clone(obj: StoredObject) -> StoredObject:
    return obj.copy() if isinstance(obj, Dataset) else copy.deepcopy(obj)


def _dict_meta(obj: dict) -> dict[str, Any]:
    meta = obj.get("metadata")
    if meta is None:
        meta = obj["metadata"] = {}
    return meta


def _identity(obj: StoredObject) -> tuple[str, str]:
    if isinstance(obj, Dataset):
        return obj.metadata.namespace, obj.metadata.name
    meta = obj.get("metadata") or {}
    return str(meta.get("namespace") or ""), str(meta.get("name") or "")


def _labels(obj: StoredObject) -> Mapping[str, str]:
    if isinstance(obj, Dataset):
        return obj.metadata.labels
    return (obj.get("metadata") or {}).get("labels") or {}


def _finalizers(obj: StoredObject) -> list[str]:
    if isinstance(obj, Dataset):
        return obj.metadata.finalizers
    return list((obj.get("metadata") or {}).get("finalizers") or [])


def _is_deleted(obj: StoredObject) -> bool:
    if isinstance(obj, Dataset):
        return obj.is_deleted()
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


def _set_resource_version(obj: StoredObject, version: str) -> None:
    if isinstance(obj, Dataset):
        obj.metadata.resource_version = version
    else:
        _dict_meta(obj)["resourceVersion"] = version


def _stamp_new(obj: StoredObject, now: datetime) -> None:
    if isinstance(obj, Dataset):
        if not obj.metadata.uid:
            obj.metadata.uid = str(uuid.uuid4())
        if obj.metadata.creation_timestamp is None:
            obj.metadata.creation_timestamp = now
        return
    meta = _dict_meta(obj)
    if not meta.get("uid"):
        meta["uid"] = str(uuid.uuid4())
    if not meta.get("creationTimestamp"):
        meta["creationTimestamp"] = _format_time(now)


def _mark_deleted(obj: StoredObject, now: datetime) -> None:
    if isinstance(obj, Dataset):
        if obj.metadata.deletion_timestamp is None:
            obj.metadata.deletion_timestamp = now
    else:
        meta = _dict_meta(obj)
        meta.setdefault("deletionTimestamp", _format_time(now))


class ObjectStore:
    """Holds objects by kind, namespace and name and hands out independent copies.

    Datasets are stored as :class:`Dataset` instances; every other kind as a
    plain mapping with a ``metadata`` entry. Objects carrying finalizers are
    only marked for deletion and disappear once an update clears them.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._objects: dict[tuple[str, str, str], StoredObject] = {}
        self._versions = itertools.count(1)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _key(kind: str, namespace: str, name: str) -> tuple[str, str, str]:
        return kind, "" if kind in CLUSTER_SCOPED_KINDS else (namespace or ""), name

    def _next_version(self) -> str:
        return str(next(self._versions))

    def get(self, kind: str, namespace: str, name: str) -> StoredObject:
        """Return a copy of the named object."""
        key = self._key(kind, namespace, name)
        try:
            return _clone(self._objects[key])
        except KeyError:
            raise NotFoundError(kind, key[1], name) from None

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[StoredObject]:
        """Return copies of every object of a kind, optionally by namespace and labels."""
        wanted = dict(labels or {})
        found = []
        for (obj_kind, obj_ns, _), obj in sorted(self._objects.items(), key=lambda item: item[0]):
            if obj_kind != kind:
                continue
            if namespace is not None and kind not in CLUSTER_SCOPED_KINDS and obj_ns != namespace:
                continue
            have = _labels(obj)
            if all(have.get(k) == v for k, v in wanted.items()):
                found.append(_clone(obj))
        return found

    def create(self, kind: str, obj: StoredObject) -> StoredObject:
        """Store a new object; its server-set fields are written back into ``obj``."""
        namespace, name = _identity(obj)
        if not name:
            raise ApiError(f"{kind} name is required", kind, namespace, name)
        key = self._key(kind, namespace, name)
        if key in self._objects:
            raise AlreadyExistsError(kind, key[1], name)
        _stamp_new(obj, self._clock())
        _set_resource_version(obj, self._next_version())
        self._objects[key] = _clone(obj)
        return _clone(obj)

    def update(self, kind: str, obj: StoredObject) -> StoredObject:
        """Replace an existing object; its new resource version is written back into ``obj``."""
        namespace, name = _identity(obj)
        key = self._key(kind, namespace, name)
        if key not in self._objects:
            raise NotFoundError(kind, key[1], name)
        _set_resource_version(obj, self._next_version())
        if _is_deleted(obj) and not _finalizers(obj):
            del self._objects[key]
        else:
            self._objects[key] = _clone(obj)
        return _clone(obj)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object, or only mark it deleted while finalizers remain."""
        key = self._key(kind, namespace, name)
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(kind, key[1], name)
        if _finalizers(stored):
            _mark_deleted(stored, self._clock())
            _set_resource_version(stored, self._next_version())
        else:
            del self._objects[key]