[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "coroserve"
version = "0.1.0"
description = "Thread-pool task scheduling, I/O readiness dispatch, pattern-based logging and servlet routing for small network servers"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["scheduler", "fiber", "selectors", "logging", "servlet", "routing", "io-manager"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["coroserve"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
