"""Dataset resource model: enums, spec, status and (de)serialisation."""

from __future__ import annotations

import copy as _copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

GROUP = "dataset.baizeai.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "Dataset"
LIST_KIND = "DatasetList"

_MODE_PATTERN = re.compile(r"^[0-7]{3,4}$")


class DatasetType(str, Enum):
    """Kinds of data source a dataset can be loaded from."""

    GIT = "GIT"
    S3 = "S3"
    PVC = "PVC"
    NFS = "NFS"
    HTTP = "HTTP"
    CONDA = "CONDA"
    REFERENCE = "REFERENCE"
    HUGGING_FACE = "HUGGING_FACE"
    MODEL_SCOPE = "MODEL_SCOPE"


class DatasetStatusPhase(str, Enum):
    """Lifecycle phase reported in a dataset's status."""

    PENDING = "PENDING"
    READY = "READY"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_type(value: Any) -> DatasetType:
    try:
        return DatasetType(value)
    except ValueError as exc:
        allowed = ", ".join(t.value for t in DatasetType)
        raise ValueError(f"unsupported dataset type {value!r}, expected one of {allowed}") from exc


@dataclass
class DatasetSource:
    """Where a dataset comes from and extra, type specific options."""

    type: DatasetType
    uri: str
    options: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.type = _parse_type(self.type)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DatasetSource:
        if "type" not in data:
            raise ValueError("spec.source.type is required")
        if "uri" not in data:
            raise ValueError("spec.source.uri is required")
        options = {str(k): str(v) for k, v in (data.get("options") or {}).items()}
        return cls(type=_parse_type(data["type"]), uri=str(data["uri"]), options=options)

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type.value, "uri": self.uri}
        if self.options:
            out["options"] = dict(self.options)
        return out


@dataclass
class MountOptions:
    """Where and with which ownership the loaded data is placed."""

    path: str = "/"
    mode: str = "0774"
    uid: int = 1000
    gid: int = 1000

    def __post_init__(self) -> None:
        if self.mode and not _MODE_PATTERN.match(self.mode):
            raise ValueError(f"invalid mount mode {self.mode!r}, expected 3 or 4 octal digits")

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> MountOptions:
        defaults = cls()
        return cls(
            path=str(data.get("path", defaults.path)),
            mode=str(data.get("mode", defaults.mode)),
            uid=int(data.get("uid", defaults.uid)),
            gid=int(data.get("gid", defaults.gid)),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.path:
            out["path"] = self.path
        if self.mode:
            out["mode"] = self.mode
        if self.uid:
            out["uid"] = self.uid
        if self.gid:
            out["gid"] = self.gid
        return out


@dataclass
class DatasetSpec:
    """Desired state of a dataset."""

    source: DatasetSource
    share: bool = False
    share_to_namespace_selector: dict[str, Any] | None = None
    secret_ref: str = ""
    mount_options: MountOptions = field(default_factory=MountOptions)
    data_sync_round: int = 1
    volume_claim_template: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DatasetSpec:
        if "source" not in data or data["source"] is None:
            raise ValueError("spec.source is required")
        selector = data.get("shareToNamespaceSelector")
        return cls(
            source=DatasetSource._from_dict(data["source"]),
            share=bool(data.get("share", False)),
            share_to_namespace_selector=_copy.deepcopy(selector) if selector is not None else None,
            secret_ref=str(data.get("secretRef", "")),
            mount_options=MountOptions._from_dict(data.get("mountOptions") or {}),
            data_sync_round=int(data.get("dataSyncRound", 1)),
            volume_claim_template=_copy.deepcopy(data.get("volumeClaimTemplate") or {}),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"source": self.source._to_dict()}
        if self.share:
            out["share"] = True
        if self.share_to_namespace_selector is not None:
            out["shareToNamespaceSelector"] = _copy.deepcopy(self.share_to_namespace_selector)
        if self.secret_ref:
            out["secretRef"] = self.secret_ref
        mount = self.mount_options._to_dict()
        if mount:
            out["mountOptions"] = mount
        if self.data_sync_round:
            out["dataSyncRound"] = self.data_sync_round
        if self.volume_claim_template:
            out["volumeClaimTemplate"] = _copy.deepcopy(self.volume_claim_template)
        return out


@dataclass
class DataLoadStatus:
    """Outcome of one data sync round."""

    round: int = 0
    job_name: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    succeed: bool = False

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DataLoadStatus:
        return cls(
            round=int(data.get("round", 0)),
            job_name=str(data.get("jobName", "")),
            start_time=_parse_time(data.get("startTime")),
            end_time=_parse_time(data.get("endTime")),
            succeed=bool(data.get("succeed", False)),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.round:
            out["round"] = self.round
        if self.job_name:
            out["jobName"] = self.job_name
        out["startTime"] = _format_time(self.start_time)
        out["endTime"] = _format_time(self.end_time)
        if self.succeed:
            out["succeed"] = True
        return out


@dataclass
class Condition:
    """A typed status condition ("True", "False" or "Unknown")."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None
    observed_generation: int = 0

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", "")),
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=_parse_time(data.get("lastTransitionTime")),
            observed_generation=int(data.get("observedGeneration", 0)),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": _format_time(self.last_transition_time),
            "reason": self.reason,
            "message": self.message,
        }
        if self.observed_generation:
            out["observedGeneration"] = self.observed_generation
        return out


@dataclass
class DatasetStatus:
    """Observed state of a dataset."""

    phase: DatasetStatusPhase = DatasetStatusPhase.PENDING
    conditions: list[Condition] = field(default_factory=list)
    in_processing: bool = False
    in_processing_round: int = 0
    last_succeed_round: int = 0
    sync_round_statuses: list[DataLoadStatus] = field(default_factory=list)
    pvc_name: str = ""
    read_only: bool = False
    last_sync_time: datetime | None = None

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DatasetStatus:
        phase = data.get("phase") or DatasetStatusPhase.PENDING.value
        return cls(
            phase=DatasetStatusPhase(phase),
            conditions=[Condition._from_dict(c) for c in data.get("conditions") or []],
            in_processing=bool(data.get("inProcessing", False)),
            in_processing_round=int(data.get("inProcessingRound", 0)),
            last_succeed_round=int(data.get("lastSucceedRound", 0)),
            sync_round_statuses=[
                DataLoadStatus._from_dict(s) for s in data.get("syncRoundStatuses") or []
            ],
            pvc_name=str(data.get("pvcName", "")),
            read_only=bool(data.get("readOnly", False)),
            last_sync_time=_parse_time(data.get("lastSyncTime")),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.phase:
            out["phase"] = DatasetStatusPhase(self.phase).value
        if self.conditions:
            out["conditions"] = [c._to_dict() for c in self.conditions]
        if self.in_processing:
            out["inProcessing"] = True
        if self.in_processing_round:
            out["inProcessingRound"] = self.in_processing_round
        if self.last_succeed_round:
            out["lastSucceedRound"] = self.last_succeed_round
        if self.sync_round_statuses:
            out["syncRoundStatuses"] = [s._to_dict() for s in self.sync_round_statuses]
        if self.pvc_name:
            out["pvcName"] = self.pvc_name
        if self.read_only:
            out["readOnly"] = True
        out["lastSyncTime"] = _format_time(self.last_sync_time)
        return out


@dataclass
class ObjectMeta:
    """Standard object metadata."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[dict[str, Any]] = field(default_factory=list)
    resource_version: str = ""
    generation: int = 0
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ObjectMeta:
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "")),
            uid=str(data.get("uid", "")),
            labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
            annotations={str(k): str(v) for k, v in (data.get("annotations") or {}).items()},
            finalizers=[str(f) for f in data.get("finalizers") or []],
            owner_references=_copy.deepcopy(list(data.get("ownerReferences") or [])),
            resource_version=str(data.get("resourceVersion", "")),
            generation=int(data.get("generation", 0)),
            creation_timestamp=_parse_time(data.get("creationTimestamp")),
            deletion_timestamp=_parse_time(data.get("deletionTimestamp")),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.name:
            out["name"] = self.name
        if self.namespace:
            out["namespace"] = self.namespace
        if self.uid:
            out["uid"] = self.uid
        if self.resource_version:
            out["resourceVersion"] = self.resource_version
        if self.generation:
            out["generation"] = self.generation
        out["creationTimestamp"] = _format_time(self.creation_timestamp)
        if self.deletion_timestamp is not None:
            out["deletionTimestamp"] = _format_time(self.deletion_timestamp)
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.annotations:
            out["annotations"] = dict(self.annotations)
        if self.owner_references:
            out["ownerReferences"] = _copy.deepcopy(self.owner_references)
        if self.finalizers:
            out["finalizers"] = list(self.finalizers)
        return out


def _check_header(data: dict[str, Any], kind: str) -> None:
    api_version = data.get("apiVersion")
    if api_version not in (None, "", API_VERSION):
        raise ValueError(f"unexpected apiVersion {api_version!r}, expected {API_VERSION!r}")
    found = data.get("kind")
    if found not in (None, "", kind):
        raise ValueError(f"unexpected kind {found!r}, expected {kind!r}")


@dataclass
class Dataset:
    """A dataset resource: metadata, desired spec and observed status."""

    metadata: ObjectMeta
    spec: DatasetSpec
    status: DatasetStatus = field(default_factory=DatasetStatus)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Dataset:
        """Build a dataset from its JSON/YAML mapping form."""
        _check_header(data, KIND)
        if not data.get("spec"):
            raise ValueError("dataset spec is required")
        return cls(
            metadata=ObjectMeta._from_dict(data.get("metadata") or {}),
            spec=DatasetSpec._from_dict(data["spec"]),
            status=DatasetStatus._from_dict(data.get("status") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON/YAML mapping form of the dataset."""
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": self.metadata._to_dict(),
            "spec": self.spec._to_dict(),
            "status": self.status._to_dict(),
        }

    def copy(self) -> Dataset:
        """Return an independent deep copy."""
        return _copy.deepcopy(self)

    def is_deleted(self) -> bool:
        """True once a deletion timestamp has been set."""
        return self.metadata.deletion_timestamp is not None

    def owner_references(self) -> list[dict[str, Any]]:
        """Controller owner reference pointing at this dataset."""
        return [
            {
                "apiVersion": API_VERSION,
                "kind": KIND,
                "name": self.metadata.name,
                "uid": self.metadata.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]


@dataclass
class DatasetList:
    """A list of datasets with list metadata."""

    items: list[Dataset] = field(default_factory=list)
    resource_version: str = ""
    continue_token: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatasetList:
        """Build a list from its JSON/YAML mapping form."""
        _check_header(data, LIST_KIND)
        meta = data.get("metadata") or {}
        return cls(
            items=[Dataset.from_dict(item) for item in data.get("items") or []],
            resource_version=str(meta.get("resourceVersion", "")),
            continue_token=str(meta.get("continue", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON/YAML mapping form of the list."""
        meta: dict[str, Any] = {}
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        if self.continue_token:
            meta["continue"] = self.continue_token
        return {
            "apiVersion": API_VERSION,
            "kind": LIST_KIND,
            "metadata": meta,
            "items": [item.to_dict() for item in self.items],
        }