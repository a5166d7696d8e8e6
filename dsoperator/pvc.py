"""Persistent volume claims (and, where needed, volumes) that back a dataset."""

from __future__ import annotations

import copy
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import SplitResult, urlsplit

from .configmap import DATASET_NAME_LABEL
from .store import (
    DATASET,
    PERSISTENT_VOLUME,
    PERSISTENT_VOLUME_CLAIM,
    ApiError,
    NotFoundError,
    ObjectStore,
)
from .types import Dataset, DatasetType

logger = logging.getLogger(__name__)

FORCE_DELETE_GRACE = timedelta(minutes=5)
DEFAULT_STORAGE = "100Ti"
DEFAULT_ACCESS_MODE = "ReadWriteMany"
DEFAULT_VOLUME_MODE = "Filesystem"
NFS_STORAGE_CLASS = "nfs-csi"
NFS_DRIVER = "nfs.csi.k8s.io"

_QUANTITY = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+))")


class ReconcileError(Exception):
    """A dataset's resources are not in a state the controller can accept."""


def force_delete(ds: Dataset, now: datetime | None = None) -> bool:
    """True once a dataset has been marked deleted for longer than the grace period."""
    deleted_at = ds.metadata.deletion_timestamp
    if deleted_at is None:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    return deleted_at + FORCE_DELETE_GRACE < now


def _parse_uri(uri: str) -> SplitResult:
    try:
        return urlsplit(uri)
    except ValueError as exc:
        raise ReconcileError(f"invalid uri {uri!r}: {exc}") from exc


def _host(parts: SplitResult) -> str:
    return parts.netloc.rpartition("@")[2]


def _meta(obj: dict[str, Any]) -> dict[str, Any]:
    meta = obj.get("metadata")
    if meta is None:
        meta = obj["metadata"] = {}
    return meta


def _labels(obj: dict[str, Any]) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def _quantity_is_zero(value: Any) -> bool:
    if value is None:
        return True
    match = _QUANTITY.match(str(value))
    if match is None:
        return True
    return float(match.group(1)) == 0


def _nfs_pv_template() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": PERSISTENT_VOLUME,
        "metadata": {"annotations": {"pv.kubernetes.io/provisioned-by": NFS_DRIVER}},
        "spec": {
            "capacity": {"storage": DEFAULT_STORAGE},
            "accessModes": [DEFAULT_ACCESS_MODE],
            "persistentVolumeReclaimPolicy": "Retain",
            "storageClassName": NFS_STORAGE_CLASS,
            "mountOptions": ["nfsvers=4.1"],
            "csi": {"driver": NFS_DRIVER},
        },
    }


def _source_dataset(store: ObjectStore, ds: Dataset) -> Dataset:
    parts = _parse_uri(ds.spec.source.uri)
    try:
        source = store.get(DATASET, _host(parts), parts.path.strip("/"))
    except ApiError as exc:
        raise ReconcileError(f"fetch source dataset {ds.spec.source.uri} error: {exc}") from exc
    return source


def _delete_tolerating(store: ObjectStore, ds: Dataset, kind: str, namespace: str, name: str) -> None:
    try:
        store.delete(kind, namespace, name)
    except NotFoundError:
        return
    except ApiError as exc:
        if force_delete(ds):
            logger.error(
                "delete %s %s for dataset %s/%s error: %s, but force delete",
                kind, name, ds.metadata.namespace, ds.metadata.name, exc,
            )
            return
        raise


def _reference_spec(store: ObjectStore, ds: Dataset) -> dict[str, Any]:
    source = _source_dataset(store, ds)
    src_ns, src_name = source.metadata.namespace, source.metadata.name
    if not source.status.pvc_name:
        raise ReconcileError(f"source dataset {src_ns}/{src_name} has no pvc")
    try:
        pvc = store.get(PERSISTENT_VOLUME_CLAIM, src_ns, source.status.pvc_name)
    except ApiError as exc:
        raise ReconcileError(
            f"get pvc {src_ns}/{source.status.pvc_name} for source dataset "
            f"{src_ns}/{src_name} error: {exc}"
        ) from exc
    pvc_spec = pvc.get("spec") or {}
    volume_name = pvc_spec.get("volumeName") or ""
    if not volume_name:
        meta = pvc.get("metadata") or {}
        raise ReconcileError(f"pvc {meta.get('namespace', '')}/{meta.get('name', '')} has no volume")
    try:
        pv = store.get(PERSISTENT_VOLUME, "", volume_name)
    except ApiError as exc:
        raise ReconcileError(
            f"get pv {volume_name} for source dataset {src_ns}/{src_name} error: {exc}"
        ) from exc

    new_pv = copy.deepcopy(pv)
    meta = _meta(new_pv)
    meta["ownerReferences"] = ds.owner_references()
    meta["name"] = f"dataset-{ds.metadata.namespace}-pvc-{ds.metadata.name}"
    meta["labels"] = {**(meta.get("labels") or {}), DATASET_NAME_LABEL: ds.metadata.name}
    for server_field in ("resourceVersion", "uid", "creationTimestamp"):
        meta.pop(server_field, None)
    pv_spec = new_pv.setdefault("spec", {})
    pv_spec.pop("claimRef", None)
    pv_spec["persistentVolumeReclaimPolicy"] = "Retain"
    try:
        store.get(PERSISTENT_VOLUME, "", meta["name"])
    except NotFoundError:
        store.create(PERSISTENT_VOLUME, new_pv)

    spec = copy.deepcopy(pvc_spec)
    spec["volumeName"] = meta["name"]
    ds.status.last_succeed_round = ds.spec.data_sync_round
    ds.status.read_only = True
    return spec


def _reconcile_existing_pvc(store: ObjectStore, ds: Dataset) -> None:
    pvc_name = _host(_parse_uri(ds.spec.source.uri))
    namespace = ds.metadata.namespace

    if ds.is_deleted():
        try:
            pvc = store.get(PERSISTENT_VOLUME_CLAIM, namespace, pvc_name)
        except ApiError:
            return
        labels = _labels(pvc)
        if labels.get(DATASET_NAME_LABEL) == ds.metadata.name:
            del _meta(pvc)["labels"][DATASET_NAME_LABEL]
            try:
                store.update(PERSISTENT_VOLUME_CLAIM, pvc)
            except ApiError as exc:
                logger.error(
                    "update pvc %s/%s for deletion %s error: %s",
                    namespace, pvc_name, ds.metadata.name, exc,
                )
        return

    pvc = store.get(PERSISTENT_VOLUME_CLAIM, namespace, pvc_name)
    labels = _labels(pvc)
    if DATASET_NAME_LABEL in labels:
        if labels[DATASET_NAME_LABEL] != ds.metadata.name:
            raise ReconcileError(
                f"pvc {pvc_name} is not belong to dataset {namespace}/{ds.metadata.name}"
            )
    else:
        meta = _meta(pvc)
        meta["labels"] = {**labels, DATASET_NAME_LABEL: ds.metadata.name}
        store.update(PERSISTENT_VOLUME_CLAIM, pvc)
    ds.status.pvc_name = pvc_name


def _reconcile_nfs_volume(store: ObjectStore, ds: Dataset, pvc_name: str) -> str:
    """Ensure the NFS volume exists; return the volume name to bind, or ''."""
    namespace = ds.metadata.namespace
    pv_name = f"dataset-{namespace}-pvc-{pvc_name}"
    template = _nfs_pv_template()
    parts = _parse_uri(ds.spec.source.uri)

    try:
        existing = store.get(PERSISTENT_VOLUME, "", pv_name)
    except NotFoundError:
        existing = None

    volume_name = ""
    if existing is not None:
        if _labels(existing).get(DATASET_NAME_LABEL) != ds.metadata.name:
            raise ReconcileError(
                f"pv {pv_name} is not belong to dataset {namespace}/{ds.metadata.name}"
            )
    else:
        meta = template["metadata"]
        meta["ownerReferences"] = ds.owner_references()
        meta["labels"] = {DATASET_NAME_LABEL: ds.metadata.name}
        meta["name"] = pv_name
        csi = template["spec"]["csi"]
        attrs = csi.setdefault("volumeAttributes", {})
        host = _host(parts)
        attrs.update(
            {
                "server": host,
                "share": "/",
                "subdir": parts.path,
                "onDelete": "retain",
                "csi.storage.k8s.io/pv/name": pv_name,
                "csi.storage.k8s.io/pvc/name": pvc_name,
                "csi.storage.k8s.io/pvc/namespace": namespace,
            }
        )
        if not attrs.get("mountPermissions"):
            attrs["mountPermissions"] = ds.spec.mount_options.mode
        csi["volumeHandle"] = f"{host}#{parts.path}#{pv_name}#"
        store.create(PERSISTENT_VOLUME, template)
        volume_name = pv_name

    ds.status.last_succeed_round = ds.spec.data_sync_round
    return volume_name


def _template_spec(ds: Dataset, storage_class: str) -> dict[str, Any]:
    spec = copy.deepcopy(ds.spec.volume_claim_template.get("spec") or {})
    if not spec.get("accessModes"):
        spec["accessModes"] = [DEFAULT_ACCESS_MODE]
    if spec.get("volumeMode") is None:
        spec["volumeMode"] = DEFAULT_VOLUME_MODE
    resources = spec.get("resources")
    if resources is None:
        resources = spec["resources"] = {}
    requests = resources.get("requests")
    if requests is None:
        requests = resources["requests"] = {}
    if _quantity_is_zero(requests.get("storage")):
        requests["storage"] = DEFAULT_STORAGE
    if storage_class:
        spec["storageClassName"] = storage_class
    return spec


def reconcile_pvc(store: ObjectStore, ds: Dataset) -> None:
    """Create, adopt or clean up the claim backing a dataset, updating its status.

    Store failures other than "not found" propagate as :class:`ApiError`.
    """
    source_type = ds.spec.source.type
    namespace = ds.metadata.namespace
    template_meta = ds.spec.volume_claim_template.get("metadata") or {}
    pvc_name = template_meta.get("name") or ds.metadata.name

    spec: dict[str, Any] | None = None
    storage_class = ""
    volume_name_override = ""

    if source_type is DatasetType.REFERENCE:
        if ds.is_deleted():
            return
        spec = _reference_spec(store, ds)
    elif source_type is DatasetType.PVC:
        _reconcile_existing_pvc(store, ds)
        return
    elif source_type is DatasetType.NFS:
        if ds.is_deleted():
            _delete_tolerating(
                store, ds, PERSISTENT_VOLUME, "", f"dataset-{namespace}-pvc-{pvc_name}"
            )
            return
        storage_class = NFS_STORAGE_CLASS
        volume_name_override = _reconcile_nfs_volume(store, ds, pvc_name)

    if ds.is_deleted():
        _delete_tolerating(store, ds, PERSISTENT_VOLUME_CLAIM, namespace, pvc_name)
        return

    ds.status.pvc_name = pvc_name
    try:
        existing = store.get(PERSISTENT_VOLUME_CLAIM, namespace, pvc_name)
    except NotFoundError:
        existing = None

    if spec is None:
        spec = _template_spec(ds, storage_class)
    if volume_name_override:
        spec["volumeName"] = volume_name_override

    if existing is None:
        store.create(
            PERSISTENT_VOLUME_CLAIM,
            {
                "apiVersion": "v1",
                "kind": PERSISTENT_VOLUME_CLAIM,
                "metadata": {
                    "name": pvc_name,
                    "namespace": namespace,
                    "labels": {**ds.metadata.labels, DATASET_NAME_LABEL: ds.metadata.name},
                    "annotations": dict(ds.metadata.annotations),
                    "ownerReferences": ds.owner_references(),
                },
                "spec": spec,
            },
        )
    elif _labels(existing).get(DATASET_NAME_LABEL) != ds.metadata.name:
        raise ReconcileError(
            f"pvc {pvc_name} already exists, but not belong to dataset {ds.metadata.name}"
        )