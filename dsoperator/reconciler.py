"""Top-level dataset reconciliation: conditions, phase, sharing rules and the reconcile loop."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

from .configmap import reconcile_config_map
from .job import reconcile_job, reconcile_job_status
from .pvc import ReconcileError, reconcile_pvc
from .selectors import InvalidSelectorError, selector_matches
from .store import DATASET, NAMESPACE, ApiError, ObjectStore
from .types import Condition, Dataset, DatasetStatusPhase, DatasetType

logger = logging.getLogger(__name__)

DATASET_FINALIZER = "dataset-controller"
COND_TYPE_CONFIG = "Config"

REQUEUE_SHORT = timedelta(seconds=5)
REQUEUE_LONG = timedelta(seconds=30)

_REASON_OK = "ReconcileSucceeded"
_REASON_FAILED = "ReconcileFailed"

_Step = Callable[[Dataset], object]


@dataclass(frozen=True)
class Result:
    """Outcome of one reconcile pass: when, if at all, to look at the dataset again."""

    requeue_after: timedelta | None = None


def set_condition(
    conditions: Iterable[Condition],
    type_: str,
    error: BaseException | None = None,
    now: datetime | None = None,
) -> list[Condition]:
    """Record the outcome of a reconcile step as a condition of the given type.

    An empty type leaves the conditions as they are. The transition time only
    moves when the condition's status changes.
    """
    current = list(conditions)
    if not type_:
        return current
    if now is None:
        now = datetime.now(timezone.utc)
    status = "False" if error is not None else "True"
    reason = _REASON_FAILED if error is not None else _REASON_OK
    message = str(error) if error is not None else ""

    result: list[Condition] = []
    found = False
    for cond in current:
        if cond.type != type_:
            result.append(cond)
            continue
        found = True
        transition = cond.last_transition_time if cond.status == status else now
        result.append(
            Condition(
                type=type_,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition,
                observed_generation=cond.observed_generation,
            )
        )
    if not found:
        result.append(
            Condition(
                type=type_,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=now,
            )
        )
    return result


def reconcile_phase(ds: Dataset) -> None:
    """Derive the dataset's phase from its type, conditions and sync rounds."""
    status = ds.status
    if ds.spec.source.type is DatasetType.REFERENCE and any(
        cond.status == "False" for cond in status.conditions
    ):
        status.phase = DatasetStatusPhase.FAILED
        return

    if ds.spec.source.type is DatasetType.PVC:
        status.phase = DatasetStatusPhase.READY
    elif status.in_processing:
        status.phase = DatasetStatusPhase.PROCESSING
    elif status.last_succeed_round != ds.spec.data_sync_round:
        status.phase = DatasetStatusPhase.FAILED
    else:
        status.phase = DatasetStatusPhase.READY


def get_source_dataset(store: ObjectStore, ds: Dataset) -> Dataset:
    """Fetch the dataset a reference dataset points at (``dataset://<namespace>/<name>``)."""
    uri = ds.spec.source.uri
    try:
        parts = urlsplit(uri)
    except ValueError as exc:
        raise ReconcileError(f"invalid uri {uri!r}: {exc}") from exc
    namespace = parts.netloc.rpartition("@")[2]
    try:
        return store.get(DATASET, namespace, parts.path.strip("/"))
    except ApiError as exc:
        raise ReconcileError(f"fetch source dataset {uri} error: {exc}") from exc


def validate(store: ObjectStore, ds: Dataset) -> None:
    """Check that a reference dataset may use its source; other types always pass."""
    if ds.spec.source.type is not DatasetType.REFERENCE:
        return
    uri = ds.spec.source.uri
    source = get_source_dataset(store, ds)
    if not source.spec.share:
        raise ReconcileError(f"source dataset {uri} is not shared")
    selector = source.spec.share_to_namespace_selector
    if selector is None:
        return
    try:
        namespace = store.get(NAMESPACE, "", ds.metadata.namespace)
    except ApiError as exc:
        raise ReconcileError(
            f"fetch current namespace {ds.metadata.namespace} error: {exc}"
        ) from exc
    labels = (namespace.get("metadata") or {}).get("labels") or {}
    try:
        matched = selector_matches(selector, labels)
    except InvalidSelectorError as exc:
        raise ReconcileError(f"parse share to namespace selector error: {exc}") from exc
    if not matched:
        raise ReconcileError(f"source dataset {uri} is not shared to current namespace")


def reconcile_finalizer(store: ObjectStore, ds: Dataset) -> None:
    """Add the controller's finalizer, or drop all finalizers once the dataset is deleted."""
    if ds.is_deleted():
        ds.metadata.finalizers = []
        store.update(DATASET, ds)
        return
    if DATASET_FINALIZER in ds.metadata.finalizers:
        return
    ds.metadata.finalizers = [DATASET_FINALIZER]
    store.update(DATASET, ds)


class DatasetReconciler:
    """Drives a dataset towards its desired state, one reconcile pass at a time."""

    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def _steps(self, ds: Dataset, now: datetime) -> list[tuple[str, _Step]]:
        store = self.store
        if ds.is_deleted():
            return [
                ("PVC", lambda d: reconcile_pvc(store, d)),
                ("", lambda d: reconcile_finalizer(store, d)),
            ]
        return [
            (COND_TYPE_CONFIG, lambda d: validate(store, d)),
            ("", lambda d: reconcile_finalizer(store, d)),
            ("PVC", lambda d: reconcile_pvc(store, d)),
            ("ConfigMap", lambda d: reconcile_config_map(store, d)),
            ("Job", lambda d: reconcile_job(store, d)),
            ("JobStatus", lambda d: reconcile_job_status(store, d, now)),
        ]

    def _write_status(self, ds: Dataset) -> None:
        current = self.store.get(DATASET, ds.metadata.namespace, ds.metadata.name)
        current.status = copy.deepcopy(ds.status)
        self.store.update(DATASET, current)

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run every reconcile step for one dataset and store its new status.

        A missing dataset is not an error. A failed status write propagates.
        """
        try:
            ds = self.store.get(DATASET, namespace, name)
        except ApiError as exc:
            logger.error("error fetch dataset for %s/%s: error: %s", namespace, name, exc)
            return Result()

        before = copy.deepcopy(ds.status)
        now = datetime.now(timezone.utc)
        for type_, step in self._steps(ds, now):
            logger.debug("start reconciling dataset for %s/%s: %s", namespace, name, type_ or "-")
            error: Exception | None = None
            try:
                step(ds)
            except (ApiError, ReconcileError, ValueError) as exc:
                error = exc
            ds.status.conditions = set_condition(ds.status.conditions, type_, error, now)
            if error is not None:
                logger.error("error reconciling dataset for %s/%s: %s", namespace, name, error)
                break

        reconcile_phase(ds)

        if ds.status != before:
            try:
                self._write_status(ds)
            except ApiError as exc:
                logger.error("error update status for %s/%s: %s", namespace, name, exc)
                raise

        phase = ds.status.phase
        if phase in (DatasetStatusPhase.READY, DatasetStatusPhase.FAILED):
            return Result()
        if phase is DatasetStatusPhase.PROCESSING:
            return Result(requeue_after=REQUEUE_SHORT)
        return Result(requeue_after=REQUEUE_LONG)