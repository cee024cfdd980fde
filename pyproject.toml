[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "podidentity-mic"
version = "0.1.0"
description = "Managed identity controller: reconciles pod identity bindings into identity assignments on cluster nodes and scale sets"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "managed-identity", "pod-identity", "controller", "vmss"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration :: Authentication/Directory",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["podidentity_mic"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
