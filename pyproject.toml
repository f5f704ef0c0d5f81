[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodestats"
version = "0.1.0"
description = "Collect node-level system statistics (CPU, memory, disk, network, host, OS features) as labelled in-memory metrics."
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["monitoring", "metrics", "node", "procfs", "system-stats", "health"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["nodestats"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
