from datetime import datetime, timedelta, timezone

import pytest

from dsoperator.configmap import DATASET_NAME_LABEL, dataset_config_map_name
from dsoperator.job import (
    PVC_MOUNT_PATH,
    build_job,
    gen_job_name,
    reconcile_job,
    reconcile_job_status,
    supports_preload,
)
from dsoperator.pvc import ReconcileError
from dsoperator.store import JOB, NotFoundError, ObjectStore
from dsoperator.types import DataLoadStatus, Dataset, DatasetType

SPEC_YAML = """
backoffLimit: 4
template:
  spec:
    restartPolicy: Never
    containers:
    - image: ubuntu:20.04
      resources:
        requests:
          cpu: 100m
          memory: 100Mi
        limits:
          cpu: 500m
          memory: 500Mi
"""

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_ds(type_="GIT", uri="https://git.example.com/o/r.git", options=None, **spec):
    data = {
        "metadata": {
            "name": "ds1",
            "namespace": "ns1",
            "uid": "uid-1",
            "labels": {"team": "a"},
            "creationTimestamp": "2024-01-01T00:00:00Z",
        },
        "spec": {"source": {"type": type_, "uri": uri, "options": options or {}}, **spec},
    }
    ds = Dataset.from_dict(data)
    ds.status.pvc_name = "ds1"
    return ds


def container_of(job):
    return job["spec"]["template"]["spec"]["containers"][0]


def volume_names(job):
    return [v["name"] for v in job["spec"]["template"]["spec"]["volumes"]]


def test_gen_job_name_format():
    assert gen_job_name("foo", 3) == "dataset-foo-round-3"


@pytest.mark.parametrize(
    "type_,expected",
    [
        (DatasetType.GIT, True),
        (DatasetType.S3, True),
        (DatasetType.HTTP, True),
        (DatasetType.CONDA, True),
        (DatasetType.HUGGING_FACE, True),
        (DatasetType.MODEL_SCOPE, True),
        (DatasetType.PVC, False),
        (DatasetType.NFS, False),
        (DatasetType.REFERENCE, False),
    ],
)
def test_supports_preload(type_, expected):
    assert supports_preload(make_ds(type_.value)) is expected


def test_build_job_git_basics():
    ds = make_ds()
    job = build_job(ds, SPEC_YAML)
    container = container_of(job)
    assert job["metadata"]["name"] == gen_job_name("ds1", 1)
    assert job["metadata"]["labels"] == {"team": "a", DATASET_NAME_LABEL: "ds1"}
    assert job["metadata"]["ownerReferences"] == ds.owner_references()
    assert container["name"] == "dataset-loader"
    assert container["image"] == "ubuntu:20.04"
    assert container["resources"]["requests"]["cpu"] == "100m"
    assert container["args"][:2] == ["GIT", "https://git.example.com/o/r.git"]
    assert f"--mount-root={PVC_MOUNT_PATH}" in container["args"]
    assert "--mount-uid=1000" in container["args"]
    assert "--mount-mode=0774" in container["args"]
    pvc_volume = job["spec"]["template"]["spec"]["volumes"][-1]
    assert pvc_volume["persistentVolumeClaim"]["claimName"] == "ds1"
    assert container["volumeMounts"][-1]["mountPath"] == PVC_MOUNT_PATH


def test_build_job_conda_resources_and_config_volume():
    ds = make_ds(
        "CONDA",
        "conda://env",
        {"condaEnvironmentYml": "name: x", "pipRequirementsTxt": "  ", "gpuType": "nvidia-gpu"},
    )
    job = build_job(ds, SPEC_YAML)
    container = container_of(job)
    assert container["resources"]["requests"]["memory"] == "2Gi"
    assert container["resources"]["limits"]["memory"] == "4Gi"
    assert container["resources"]["limits"]["nvidia.com/gpu"] == "1"
    assert "dataset-config-conda" in volume_names(job)
    conda = job["spec"]["template"]["spec"]["volumes"][0]
    assert conda["configMap"]["name"] == dataset_config_map_name(ds)
    assert len(conda["configMap"]["items"]) == 1
    joined = " ".join(container["args"])
    assert "condaEnvironmentYml" not in joined
    assert "gpuType" not in joined
    assert "--options=pipRequirementsTxt=\"  \"" in container["args"]


def test_build_job_hugging_face_limits():
    job = build_job(make_ds("HUGGING_FACE", "huggingface://repo"), SPEC_YAML)
    assert container_of(job)["resources"]["limits"]["memory"] == "8Gi"


def test_build_job_vgpu_keeps_gpu_option_for_non_conda():
    job = build_job(make_ds(options={"gpuType": "nvidia-vgpu"}), SPEC_YAML)
    container = container_of(job)
    assert container["resources"]["requests"]["nvidia.com/gpumem"] == "500"
    assert "--options=gpuType=nvidia-vgpu" in container["args"]


def test_build_job_quotes_values_with_whitespace():
    job = build_job(make_ds(options={"branch": "main", "note": "a b"}), SPEC_YAML)
    args = container_of(job)["args"]
    assert "--options=branch=main" in args
    assert '--options=note="a b"' in args


def test_build_job_secret_volume():
    job = build_job(make_ds(secretRef="creds"), SPEC_YAML)
    volumes = job["spec"]["template"]["spec"]["volumes"]
    assert volume_names(job) == ["dataset-secret", "dataset-pvc"]
    assert volumes[0]["secret"]["secretName"] == "creds"


def test_build_job_without_container_fails():
    with pytest.raises(ReconcileError):
        build_job(make_ds(), "backoffLimit: 1\n")


def test_reconcile_job_creates_job_and_marks_processing(monkeypatch):
    monkeypatch.setattr("dsoperator.job.get_dataset_job_spec_yaml", lambda: SPEC_YAML)
    store = ObjectStore()
    ds = make_ds(dataSyncRound=2)
    created = reconcile_job(store, ds)
    assert created["metadata"]["name"] == gen_job_name("ds1", 2)
    assert ds.status.in_processing is True
    assert ds.status.in_processing_round == 2
    stored = store.get(JOB, "ns1", gen_job_name("ds1", 2))
    assert container_of(stored)["args"][0] == "GIT"
    again = reconcile_job(store, ds)
    assert again["metadata"]["name"] == created["metadata"]["name"]
    assert len(store.list(JOB, "ns1")) == 1


def test_reconcile_job_nothing_to_do():
    store = ObjectStore()
    ds = make_ds()
    ds.status.last_succeed_round = 1
    assert reconcile_job(store, ds) is None
    assert store.list(JOB, "ns1") == []
    assert ds.status.in_processing is False


def test_reconcile_job_deleted_removes_owned_jobs():
    store = ObjectStore()
    for name, labels in (("j1", {DATASET_NAME_LABEL: "ds1"}), ("j2", {DATASET_NAME_LABEL: "ds1"}), ("other", {})):
        store.create(JOB, {"metadata": {"name": name, "namespace": "ns1", "labels": labels}})
    ds = make_ds()
    ds.metadata.deletion_timestamp = CREATED
    assert reconcile_job(store, ds) is None
    remaining = [j["metadata"]["name"] for j in store.list(JOB, "ns1")]
    assert remaining == ["other"]


def test_status_not_preload_uses_creation_time():
    ds = make_ds("PVC", "pvc://claim")
    reconcile_job_status(ObjectStore(), ds)
    assert ds.status.last_sync_time == CREATED


def test_status_idle_reads_completion_time():
    store = ObjectStore()
    store.create(
        JOB,
        {
            "metadata": {"name": gen_job_name("ds1", 1), "namespace": "ns1"},
            "status": {"completionTime": "2024-02-03T04:05:06Z"},
        },
    )
    ds = make_ds()
    ds.status.last_succeed_round = 1
    reconcile_job_status(store, ds)
    assert ds.status.last_sync_time == datetime(2024, 2, 3, 4, 5, 6, tzinfo=timezone.utc)


def test_status_success_finishes_round():
    store = ObjectStore()
    store.create(
        JOB,
        {
            "metadata": {"name": gen_job_name("ds1", 1), "namespace": "ns1"},
            "status": {
                "succeeded": 1,
                "startTime": "2024-02-03T04:00:00Z",
                "completionTime": "2024-02-03T04:05:06Z",
            },
        },
    )
    ds = make_ds()
    ds.status.in_processing = True
    ds.status.in_processing_round = 1
    reconcile_job_status(store, ds, now=CREATED + timedelta(days=40))
    assert ds.status.in_processing is False
    assert ds.status.in_processing_round == 0
    assert ds.status.last_succeed_round == 1
    [loader] = ds.status.sync_round_statuses
    assert loader.succeed is True
    assert loader.job_name == gen_job_name("ds1", 1)
    assert loader.start_time == datetime(2024, 2, 3, 4, 0, 0, tzinfo=timezone.utc)
    assert loader.end_time == ds.status.last_sync_time


def test_status_failure_condition_stops_processing():
    store = ObjectStore()
    store.create(
        JOB,
        {
            "metadata": {"name": gen_job_name("ds1", 1), "namespace": "ns1"},
            "status": {"conditions": [{"type": "Failed", "status": "True"}]},
        },
    )
    ds = make_ds()
    ds.status.in_processing = True
    ds.status.in_processing_round = 1
    now = CREATED + timedelta(hours=1)
    reconcile_job_status(store, ds, now=now)
    assert ds.status.in_processing is False
    assert ds.status.last_succeed_round == 0
    [loader] = ds.status.sync_round_statuses
    assert loader.succeed is False
    assert loader.start_time == now


def test_status_running_job_keeps_processing_and_prunes_history():
    store = ObjectStore()
    store.create(JOB, {"metadata": {"name": gen_job_name("ds1", 7), "namespace": "ns1"}})
    ds = make_ds(dataSyncRound=7)
    ds.status.in_processing = True
    ds.status.in_processing_round = 7
    ds.status.sync_round_statuses = [DataLoadStatus(round=r) for r in (1, 2, 3)]
    reconcile_job_status(store, ds, now=CREATED)
    assert ds.status.in_processing is True
    assert [s.round for s in ds.status.sync_round_statuses] == [3, 7]


def test_status_missing_job_raises():
    ds = make_ds()
    ds.status.in_processing = True
    ds.status.in_processing_round = 1
    with pytest.raises(NotFoundError):
        reconcile_job_status(ObjectStore(), ds)