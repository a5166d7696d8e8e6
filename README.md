# dsoperator

`dsoperator` holds the reconciliation logic for `Dataset` resources
(API group `dataset.baizeai.io`, version `v1alpha1`). A `Dataset` says where its data
comes from. The source can be a Git repository, S3, HTTP, a conda environment, Hugging Face,
ModelScope, an existing PVC, an NFS share, or a reference to another shared dataset.
From that, the reconciler works out what should exist next to it: a persistent volume
claim, and for NFS and reference sources a persistent volume; a conda config map where
one is needed; a loader job for each sync round; and a status phase.

All of this runs against an in-memory `ObjectStore`. You can drive a reconciliation and
inspect its result without a cluster.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Usage

```python
from dsoperator.types import Dataset
from dsoperator.store import ObjectStore
from dsoperator.reconciler import DatasetReconciler

store = ObjectStore()
ds = Dataset.from_dict({
    "metadata": {"name": "demo", "namespace": "team-a"},
    "spec": {
        "source": {"type": "GIT", "uri": "https://git.example.com/org/repo.git"},
        "dataSyncRound": 1,
    },
})
store.create("Dataset", ds)

reconciler = DatasetReconciler(store)
result = reconciler.reconcile("team-a", "demo")
print(result.requeue_after)                               # 0:00:05 while the job runs
print(store.get("Dataset", "team-a", "demo").status.phase)  # DatasetStatusPhase.PROCESSING
print(store.list("Job", "team-a"))                        # the loader job "dataset-demo-round-1"
```

## Modules

- `dsoperator.types`: the resource model. It contains `Dataset`, `DatasetList`,
  `DatasetSpec`, `DatasetSource`, `MountOptions`, `DatasetStatus`, `DataLoadStatus`,
  `Condition` and `ObjectMeta`, and the enums `DatasetType` and `DatasetStatusPhase`.
  `Dataset.from_dict` and `Dataset.to_dict` convert to and from the JSON/YAML mapping
  form. `Dataset.copy` returns a deep copy, `Dataset.is_deleted` checks for a deletion
  timestamp, and `Dataset.owner_references` returns a controller owner reference.
- `dsoperator.store`: `ObjectStore` with `get`, `list`, `create`, `update` and `delete`.
  Each call works on a kind, a namespace and a name. Datasets are stored as `Dataset`
  objects and every other kind as a plain mapping. `PersistentVolume` and `Namespace`
  are cluster scoped. An object that still carries finalizers is only marked deleted,
  and it goes away once an update clears them. Failures are raised as `ApiError`,
  `NotFoundError` and `AlreadyExistsError`.
- `dsoperator.selectors`: `selector_matches(selector, labels)` evaluates a label
  selector built from `matchLabels` and `matchExpressions`. It supports the operators
  `In`, `NotIn`, `Exists` and `DoesNotExist`. A missing selector matches nothing and an
  empty one matches everything. A malformed selector raises `InvalidSelectorError`.
- `dsoperator.configmap`: `dataset_config_map_name`, `build_config_map`,
  `apply_conda_files` and `reconcile_config_map`. For `CONDA` sources these write the
  `condaEnvironmentYml` option to `environment.yaml` and the `pipRequirementsTxt` option
  to `requirements.txt`.
- `dsoperator.pvc`: `reconcile_pvc` creates or adopts the claim behind a dataset, and
  cleans it up on deletion. `force_delete` reports when a deleted dataset is past its
  five-minute grace period; after that, cleanup errors are logged instead of raised.
  `ReconcileError` is raised when the resources are in a state that cannot be accepted,
  for example a claim that belongs to another dataset.
- `dsoperator.job`: `gen_job_name`, `supports_preload`, `build_job`, `reconcile_job` and
  `reconcile_job_status`. The loader job's container gets:
  - resources by source type and by the `gpuType` option;
  - volumes for the conda config map, the `secretRef` secret and the dataset's claim;
  - arguments built from the source and the mount options.
- `dsoperator.reconciler`: `DatasetReconciler.reconcile(namespace, name)` returns a
  `Result`. The module also has the individual steps `validate`, `get_source_dataset`,
  `reconcile_finalizer`, `reconcile_phase` and `set_condition`.

A reconcile pass runs these steps in order:

1. validate the dataset (a reference dataset must point at a source that is shared with
   its namespace);
2. add the `dataset-controller` finalizer;
3. create or adopt the persistent volume claim;
4. for `CONDA` sources, create or update the config map;
5. create the loader job when `dataSyncRound` is greater than the last round that succeeded;
6. fold the job's outcome into the status, keeping the statuses of the last five rounds.

The pass stops at the first step that fails. Every step with a type (`Config`, `PVC`,
`ConfigMap`, `Job`, `JobStatus`) records its outcome as a condition. Once the steps are
done, `reconcile_phase` sets the phase, and the status is written back when it changed.
`Result.requeue_after` is `None` for `READY` and `FAILED`, 5 seconds for `PROCESSING`,
and 30 seconds otherwise.

When a dataset is being deleted, a pass only cleans up its volumes and then drops its
finalizers.

## Configuration

The loader job's spec comes from a YAML template. `dsoperator.config.parse_config_from_file(path)`
and `parse_config_from_file_content(text)` read a YAML mapping whose `dataset_job_spec_yaml`
key holds that template. A key present in the file can be overridden by a non-empty
environment variable named after the key, in upper case with dots replaced by underscores
(for example `DATASET_JOB_SPEC_YAML`). When no template is set, `get_dataset_job_spec_yaml()`
returns the built-in default, which is a single `ubuntu:20.04` container. Read and parse
errors are raised as `ConfigError`.

## What this package does not do

- It does not talk to a Kubernetes API server. It has no client, no watch loop, no leader
  election and no health or metrics endpoints. Reconciliation runs only against
  `ObjectStore`, and `DatasetReconciler.reconcile` is called explicitly.
- It provides no command-line program.
- It does not load any data. `build_job` describes the loader job and its arguments, but
  nothing in the package fetches from Git, S3, HTTP, conda, Hugging Face or ModelScope.