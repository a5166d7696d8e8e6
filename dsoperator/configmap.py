"""Config map holding the conda environment and pip requirement files of a dataset."""

from __future__ import annotations

from typing import Any

from .store import CONFIG_MAP, NotFoundError, ObjectStore
from .types import Dataset, DatasetType

DATASET_NAME_LABEL = "dataset.baizeai.io/name"
CONDA_ENVIRONMENT_YAML_FILENAME = "environment.yaml"
PIP_REQUIREMENTS_TXT_FILENAME = "requirements.txt"

CONDA_ENVIRONMENT_OPTION = "condaEnvironmentYml"
PIP_REQUIREMENTS_OPTION = "pipRequirementsTxt"


def dataset_config_map_name(ds: Dataset) -> str:
    """Name of the config map that belongs to a dataset."""
    return f"dataset-{ds.metadata.name}-config"


def apply_conda_files(
    config_map: dict[str, Any],
    environment_yaml: str | None = None,
    requirements_txt: str | None = None,
) -> dict[str, Any]:
    """Write the given files into the config map's data, creating it if absent."""
    if config_map.get("data") is None:
        config_map["data"] = {}
    if environment_yaml is not None:
        config_map["data"][CONDA_ENVIRONMENT_YAML_FILENAME] = environment_yaml
    if requirements_txt is not None:
        config_map["data"][PIP_REQUIREMENTS_TXT_FILENAME] = requirements_txt
    return config_map


def build_config_map(
    ds: Dataset,
    environment_yaml: str | None = None,
    requirements_txt: str | None = None,
) -> dict[str, Any]:
    """Return a new config map owned by the dataset."""
    config_map: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": CONFIG_MAP,
        "metadata": {
            "name": dataset_config_map_name(ds),
            "namespace": ds.metadata.namespace,
            "labels": {**ds.metadata.labels, DATASET_NAME_LABEL: ds.metadata.name},
            "ownerReferences": ds.owner_references(),
        },
        "data": {},
    }
    return apply_conda_files(config_map, environment_yaml, requirements_txt)


def _non_blank(value: str | None) -> str | None:
    return value if value is not None and value.strip() else None


def reconcile_config_map(store: ObjectStore, ds: Dataset) -> dict[str, Any] | None:
    """Create or update the conda config map of a dataset; other types need none."""
    if ds.spec.source.type is not DatasetType.CONDA:
        return None

    try:
        existing = store.get(CONFIG_MAP, ds.metadata.namespace, dataset_config_map_name(ds))
    except NotFoundError:
        existing = None

    options = ds.spec.source.options
    environment_yaml = _non_blank(options.get(CONDA_ENVIRONMENT_OPTION))
    requirements_txt = _non_blank(options.get(PIP_REQUIREMENTS_OPTION))

    if existing is None:
        return store.create(CONFIG_MAP, build_config_map(ds, environment_yaml, requirements_txt))
    apply_conda_files(existing, environment_yaml, requirements_txt)
    return store.update(CONFIG_MAP, existing)