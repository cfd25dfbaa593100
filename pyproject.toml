[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "oplogsync"
version = "0.1.0"
description = "Building blocks for MongoDB replication: oplog tailing, filters, namespace transforms, checkpoints and parallel document inserts"
requires-python = ">=3.10"
keywords = ["mongodb", "oplog", "replication", "sync", "checkpoint"]
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
    "Topic :: Database",
]
dependencies = [
    "pymongo",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["oplogsync"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
