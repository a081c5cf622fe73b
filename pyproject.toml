[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kustoingest"
version = "0.1.0"
description = "Queued, streaming and managed-streaming ingestion clients for Kusto data explorer clusters"
requires-python = ">=3.10"
dependencies = []
keywords = ["kusto", "ingestion", "streaming", "data-explorer", "gzip"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Front-Ends",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kustoingest"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
