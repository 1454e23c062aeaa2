[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "multusconf"
version = "0.1.0"
description = "Load, validate and merge multi-network CNI configurations and delegate plugin settings"
requires-python = ">=3.10"
dependencies = []
keywords = ["cni", "kubernetes", "networking", "multus", "configuration"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["multusconf"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
