[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "dsoperator"
version = "0.1.0"
description = "Reconciliation logic for Dataset resources: volumes, loader jobs, config maps and status phases, run against an in-memory object store"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["dataset", "operator", "controller", "reconcile", "kubernetes"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.setuptools.packages.find]
include = ["dsoperator*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
