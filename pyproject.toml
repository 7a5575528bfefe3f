[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "calnex"
version = "0.1.0"
description = "Command-line tools and client library for managing Calnex Sentinel time-measurement appliances"
requires-python = ">=3.10"
keywords = ["calnex", "ptp", "ntp", "time", "measurement", "sentinel"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Time Synchronization",
]
dependencies = [
    "requests",
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
calnex = "calnex.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["calnex"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
