[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "parcastore"
version = "0.1.0"
description = "Storage, configuration and debug-info bookkeeping for a continuous profiling server"
requires-python = ">=3.10"
keywords = [
    "profiling",
    "pprof",
    "metastore",
    "debuginfo",
    "debuginfod",
    "scrape-config",
    "xxhash",
]
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
    "Topic :: System :: Monitoring",
    "Topic :: Software Development :: Debuggers",
]
dependencies = [
    "pyyaml>=6.0",
    "watchdog>=3.0",
    "sortedcontainers>=2.4",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[tool.hatch.build.targets.wheel]
packages = ["parcastore"]

[tool.hatch.build.targets.sdist]
include = [
    "parcastore",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
