import pytest
import yaml

from dsoperator.config import (
    ConfigError,
    Configuration,
    get_dataset_job_spec_yaml,
    parse_config_from_file,
    parse_config_from_file_content,
)

ENV = "DATASET_JOB_SPEC_YAML"


@pytest.fixture(autouse=True)
def _reset(monkeypatch):
    monkeypatch.delenv(ENV, raising=False)
    parse_config_from_file_content("")
    yield
    monkeypatch.delenv(ENV, raising=False)
    parse_config_from_file_content("")


def test_default_template_is_valid_job_spec():
    text = get_dataset_job_spec_yaml()
    assert "backoffLimit: 4" in text
    spec = yaml.safe_load(text)
    assert spec["completionMode"] == "NonIndexed"
    assert spec["template"]["spec"]["restartPolicy"] == "Never"
    container = spec["template"]["spec"]["containers"][0]
    assert container["image"] == "ubuntu:20.04"
    assert container["resources"]["limits"]["memory"] == "500Mi"


def test_content_sets_template():
    parse_config_from_file_content("dataset_job_spec_yaml: 'parallelism: 2'\n")
    assert get_dataset_job_spec_yaml() == "parallelism: 2"


def test_file_sets_template(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("dataset_job_spec_yaml: |\n  completions: 3\n", encoding="utf-8")
    parse_config_from_file(path)
    assert yaml.safe_load(get_dataset_job_spec_yaml()) == {"completions": 3}


def test_keys_are_case_insensitive():
    parse_config_from_file_content("Dataset_Job_Spec_Yaml: custom\n")
    assert get_dataset_job_spec_yaml() == "custom"


def test_empty_value_falls_back_to_default():
    default = get_dataset_job_spec_yaml()
    parse_config_from_file_content("dataset_job_spec_yaml: ''\n")
    assert get_dataset_job_spec_yaml() == default


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError):
        parse_config_from_file(tmp_path / "absent.yaml")


def test_invalid_yaml_raises():
    with pytest.raises(ConfigError):
        parse_config_from_file_content("key: [unclosed\n")


def test_non_mapping_raises():
    with pytest.raises(ConfigError):
        parse_config_from_file_content("- a\n- b\n")


def test_non_scalar_value_raises_and_resets():
    parse_config_from_file_content("dataset_job_spec_yaml: custom\n")
    with pytest.raises(ConfigError):
        parse_config_from_file_content("dataset_job_spec_yaml:\n  nested: true\n")
    assert "backoffLimit: 4" in get_dataset_job_spec_yaml()


def test_environment_overrides_known_key(monkeypatch):
    monkeypatch.setenv(ENV, "from-env")
    parse_config_from_file_content("dataset_job_spec_yaml: from-file\n")
    assert get_dataset_job_spec_yaml() == "from-env"


def test_environment_ignored_for_absent_key(monkeypatch):
    monkeypatch.setenv(ENV, "from-env")
    parse_config_from_file_content("other: 1\n")
    assert "backoffLimit: 4" in get_dataset_job_spec_yaml()


def test_configuration_default_is_empty():
    assert Configuration().dataset_job_spec_yaml == ""