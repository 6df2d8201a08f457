[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodesetctl"
version = "0.4.0"
description = "NodeSet pod identity, deletion ordering, PVC ownership and Slurm node control logic"
requires-python = ">=3.10"
dependencies = []
keywords = ["slurm", "kubernetes", "nodeset", "hpc", "pvc", "hostlist"]
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
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nodesetctl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict_optional = true
warn_unused_ignores = true
