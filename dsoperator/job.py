"""Data loading jobs of a dataset: building them, starting them and tracking their outcome."""

from __future__ import annotations

import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any

import yaml

from .config import get_dataset_job_spec_yaml
from .configmap import (
    CONDA_ENVIRONMENT_OPTION,
    CONDA_ENVIRONMENT_YAML_FILENAME,
    DATASET_NAME_LABEL,
    PIP_REQUIREMENTS_OPTION,
    PIP_REQUIREMENTS_TXT_FILENAME,
    dataset_config_map_name,
)
from .pvc import ReconcileError, force_delete
from .store import JOB, AlreadyExistsError, ApiError, NotFoundError, ObjectStore
from .types import DataLoadStatus, Dataset, DatasetType

logger = logging.getLogger(__name__)

KEEP_SYNC_ROUNDS = 5
CONTAINER_NAME = "dataset-loader"
PVC_MOUNT_PATH = "/baize/dataset/data"
CREDENTIALS_MOUNT_PATH = "/baize/dataset/secrets"
CONDA_CONFIG_DIR = "/baize/dataset/conda"
CONDA_VOLUME_NAME = "dataset-config-conda"
CREDENTIALS_VOLUME_NAME = "dataset-secret"
PVC_VOLUME_NAME = "dataset-pvc"
GPU_TYPE_OPTION = "gpuType"

SECRETS_MOUNT_PATH = CREDENTIALS_MOUNT_PATH
SECRET_VOLUME_NAME = CREDENTIALS_VOLUME_NAME

_PRELOAD_TYPES = frozenset(
    {
        DatasetType.GIT,
        DatasetType.S3,
        DatasetType.HTTP,
        DatasetType.CONDA,
        DatasetType.HUGGING_FACE,
        DatasetType.MODEL_SCOPE,
    }
)

_TYPE_RESOURCES: dict[DatasetType, tuple[dict[str, str], dict[str, str]]] = {
    DatasetType.CONDA: ({"cpu": "2", "memory": "2Gi"}, {"cpu": "4", "memory": "4Gi"}),
    DatasetType.HUGGING_FACE: ({"cpu": "2", "memory": "2Gi"}, {"cpu": "4", "memory": "8Gi"}),
    DatasetType.MODEL_SCOPE: ({"cpu": "2", "memory": "2Gi"}, {"cpu": "4", "memory": "8Gi"}),
}

_GPU_RESOURCES: dict[str, dict[str, str]] = {
    "nvidia-gpu": {"nvidia.com/gpu": "1"},
    "nvidia-vgpu": {"nvidia.com/vgpu": "1", "nvidia.com/gpumem": "500"},
    "metax-gpu": {"metax-tech.com/gpu": "1"},
}

_WHITESPACE = re.compile(r"[\t\n\f\r ]")
_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def gen_job_name(ds_name: str, round_: int) -> str:
    """Name of the job that performs one sync round of a dataset."""
    return f"dataset-{ds_name}-round-{round_}"


def supports_preload(ds: Dataset) -> bool:
    """True for source types whose data is copied in by a loader job."""
    return ds.spec.source.type in _PRELOAD_TYPES


def _quote(value: str) -> str:
    parts = []
    for char in value:
        if char in _ESCAPES:
            parts.append(_ESCAPES[char])
        elif not char.isprintable():
            code = ord(char)
            parts.append(f"\\x{code:02x}" if code < 0x100 else f"\\u{code:04x}")
        else:
            parts.append(char)
    return '"' + "".join(parts) + '"'


def _mapping(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = parent[key] = {}
    return value


def _load_job_spec(text: str) -> dict[str, Any]:
    try:
        spec = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.error("unmarshal dataset job spec yaml failed: %s", exc)
        return {}
    if spec is None:
        return {}
    if not isinstance(spec, dict):
        logger.error("unmarshal dataset job spec yaml failed: not a mapping")
        return {}
    return spec


def _container_args(ds: Dataset, options: dict[str, str]) -> list[str]:
    source = ds.spec.source
    mount = ds.spec.mount_options
    args = [source.type.value, source.uri]
    for key, value in sorted(options.items()):
        shown = _quote(value) if _WHITESPACE.search(value) else value
        args.append(f"--options={key}={shown}")
    if mount.path:
        args.append(f"--mount-path={mount.path}")
    if mount.mode:
        args.append(f"--mount-mode={mount.mode}")
    args.append(f"--mount-uid={mount.uid}")
    args.append(f"--mount-gid={mount.gid}")
    args.append(f"--mount-root={PVC_MOUNT_PATH}")
    return args


def build_job(ds: Dataset, job_spec_yaml: str | None = None) -> dict[str, Any]:
    """Return the loader job for the dataset's current sync round.

    The job spec starts from ``job_spec_yaml`` (the configured template when
    omitted); its first container becomes the loader.
    """
    text = job_spec_yaml if job_spec_yaml is not None else get_dataset_job_spec_yaml()
    job_spec = _load_job_spec(text)
    pod_spec = _mapping(_mapping(job_spec, "template"), "spec")
    containers = pod_spec.get("containers") or []
    if not containers or not isinstance(containers[0], dict):
        raise ReconcileError("dataset job spec template has no container")
    container = containers[0]
    container["name"] = CONTAINER_NAME

    source = ds.spec.source
    type_requests, type_limits = _TYPE_RESOURCES.get(source.type, ({}, {}))
    requests = dict(type_requests)
    limits = dict(type_limits)
    gpu = _GPU_RESOURCES.get(source.options.get(GPU_TYPE_OPTION, ""), {}) if GPU_TYPE_OPTION in source.options else {}
    requests.update(gpu)
    limits.update(gpu)
    if requests or limits:
        resources = _mapping(container, "resources")
        if requests:
            resources["requests"] = requests
        if limits:
            resources["limits"] = limits

    options = dict(source.options)
    volumes = pod_spec.get("volumes") or []
    mounts = container.get("volumeMounts") or []

    if source.type is DatasetType.CONDA:
        items = []
        for option, filename in (
            (CONDA_ENVIRONMENT_OPTION, CONDA_ENVIRONMENT_YAML_FILENAME),
            (PIP_REQUIREMENTS_OPTION, PIP_REQUIREMENTS_TXT_FILENAME),
        ):
            value = options.get(option)
            if value is not None and value.strip():
                del options[option]
                items.append({"key": filename, "path": filename})
        if items:
            volumes.append(
                {
                    "name": CONDA_VOLUME_NAME,
                    "configMap": {"name": dataset_config_map_name(ds), "items": items},
                }
            )
            mounts.append(
                {"name": CONDA_VOLUME_NAME, "mountPath": CONDA_CONFIG_DIR, "readOnly": True}
            )

    if ds.spec.secret_ref:
        credentials_source = dict(secretName=ds.spec.secret_ref)
        volume_entry: dict[str, Any] = {"name": CREDENTIALS_VOLUME_NAME}
        volume_entry["secret"] = credentials_source
        volumes.append(volume_entry)
        mounts.append(
            {"name": CREDENTIALS_VOLUME_NAME, "mountPath": CREDENTIALS_MOUNT_PATH, "readOnly": True}
        )

    volumes.append(
        {"name": PVC_VOLUME_NAME, "persistentVolumeClaim": {"claimName": ds.status.pvc_name}}
    )
    mounts.append({"name": PVC_VOLUME_NAME, "mountPath": PVC_MOUNT_PATH})
    pod_spec["volumes"] = volumes
    container["volumeMounts"] = mounts

    if source.type is DatasetType.CONDA:
        options.pop(GPU_TYPE_OPTION, None)
    container["args"] = _container_args(ds, options)

    return {
        "apiVersion": "batch/v1",
        "kind": JOB,
        "metadata": {
            "name": gen_job_name(ds.metadata.name, ds.spec.data_sync_round),
            "namespace": ds.metadata.namespace,
            "labels": {**ds.metadata.labels, DATASET_NAME_LABEL: ds.metadata.name},
            "annotations": dict(ds.metadata.annotations),
            "ownerReferences": ds.owner_references(),
        },
        "spec": job_spec,
    }


def _delete_jobs(store: ObjectStore, ds: Dataset) -> None:
    namespace, name = ds.metadata.namespace, ds.metadata.name
    try:
        jobs = store.list(JOB, namespace, {DATASET_NAME_LABEL: name})
    except NotFoundError:
        jobs = []
    except ApiError as exc:
        if force_delete(ds):
            logger.error("delete jobs for dataset %s/%s error: %s, but force delete", namespace, name, exc)
            return
        raise
    for job in jobs:
        meta = job.get("metadata") or {}
        try:
            store.delete(JOB, meta.get("namespace", ""), meta.get("name", ""))
        except NotFoundError:
            continue
        except ApiError as exc:
            if force_delete(ds):
                logger.error(
                    "delete job %s/%s for dataset %s/%s error: %s, but force delete",
                    meta.get("namespace", ""), meta.get("name", ""), namespace, name, exc,
                )
                return
            raise


def reconcile_job(store: ObjectStore, ds: Dataset) -> dict[str, Any] | None:
    """Start a loader job when a new sync round is requested; remove jobs on deletion.

    Returns the job that was submitted, or None when nothing was submitted.
    """
    if not supports_preload(ds):
        return None
    if ds.is_deleted():
        _delete_jobs(store, ds)
        return None
    if ds.spec.data_sync_round <= ds.status.last_succeed_round:
        return None

    ds.status.in_processing = True
    ds.status.in_processing_round = ds.spec.data_sync_round
    job = build_job(ds)
    try:
        return store.create(JOB, job)
    except AlreadyExistsError:
        return job


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _job_failed(status: dict[str, Any]) -> bool:
    return any(
        cond.get("type") == "Failed" and cond.get("status") == "True"
        for cond in status.get("conditions") or []
    )


def reconcile_job_status(
    store: ObjectStore, ds: Dataset, now: datetime | None = None
) -> None:
    """Fold the state of the current loader job into the dataset's status."""
    if now is None:
        now = datetime.now(timezone.utc)
    status = ds.status
    namespace, name = ds.metadata.namespace, ds.metadata.name

    if not supports_preload(ds):
        status.last_sync_time = ds.metadata.creation_timestamp
        return

    if not status.in_processing:
        if status.last_succeed_round > 0:
            job = store.get(JOB, namespace, gen_job_name(name, status.last_succeed_round))
            completed = _parse_time((job.get("status") or {}).get("completionTime"))
            status.last_sync_time = completed or ds.metadata.creation_timestamp
        else:
            status.last_sync_time = ds.metadata.creation_timestamp
        return

    job_name = gen_job_name(name, status.in_processing_round)
    job = store.get(JOB, namespace, job_name)
    job_status = job.get("status") or {}

    loader = next(
        (s for s in status.sync_round_statuses if s.round == status.in_processing_round), None
    )
    if loader is None:
        loader = DataLoadStatus(
            round=status.in_processing_round, job_name=job_name, start_time=now, succeed=False
        )
        status.sync_round_statuses.append(loader)

    if int(job_status.get("succeeded") or 0) > 0:
        completed = _parse_time(job_status.get("completionTime"))
        loader.start_time = _parse_time(job_status.get("startTime")) or loader.start_time
        loader.end_time = completed or now
        status.last_sync_time = completed or now
        loader.succeed = True
        status.in_processing = False
        status.last_succeed_round = status.in_processing_round
        status.in_processing_round = 0
    elif _job_failed(job_status):
        status.in_processing = False
        status.in_processing_round = 0
        loader.succeed = False

    status.sync_round_statuses = [
        s
        for s in status.sync_round_statuses
        if s.round + KEEP_SYNC_ROUNDS > ds.spec.data_sync_round
    ]


__all__ = [
    "build_job",
    "gen_job_name",
    "reconcile_job",
    "reconcile_job_status",
    "supports_preload",
    "copy",
]