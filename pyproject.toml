[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "globaltx"
version = "0.1.0"
description = "Client side of a distributed transaction framework: global transactions, TCC branches and the RPC frame codec"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "distributed-transactions",
    "two-phase-commit",
    "tcc",
    "transaction-manager",
    "resource-manager",
    "rpc",
]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
globaltx-sample = "globaltx.sample:main"

[tool.hatch.build.targets.wheel]
packages = ["globaltx"]

[tool.pytest.ini_options]
addopts = "-ra"
