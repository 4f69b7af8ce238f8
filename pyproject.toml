[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dagorder"
version = "0.1.0"
description = "Unit DAG bookkeeping for asynchronous BFT consensus: signed units, fork detection, a unit store, a DAG terminal and the runway that validates and routes units."
requires-python = ">=3.10"
dependencies = []
keywords = ["consensus", "bft", "dag", "distributed", "signatures", "forks"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[tool.hatch.build.targets.wheel]
packages = ["dagorder"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
