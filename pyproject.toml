[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "k6clickhouse"
version = "0.1.0"
description = "Stream k6 load-test metric samples into ClickHouse with retries, failover buffering and pluggable table schemas."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "k6",
    "clickhouse",
    "metrics",
    "load-testing",
    "performance",
    "observability",
]
classifiers = [
    "Development Status :: 4 - Beta",
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
    "Topic :: Software Development :: Testing :: Traffic Generation",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["k6clickhouse"]

[tool.hatch.build.targets.sdist]
include = ["k6clickhouse", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
