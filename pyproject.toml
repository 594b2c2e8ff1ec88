[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pcas"
version = "0.1.0"
description = "A local-first event bus that routes events to compute providers by policy, stores them in SQLite and answers semantic searches over them"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
    "httpx",
]
keywords = [
    "event-bus",
    "policy",
    "rag",
    "embeddings",
    "vector-search",
    "sqlite",
    "llm",
    "ollama",
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
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
    "Topic :: Database",
    "Framework :: AsyncIO",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["pcas"]

[tool.hatch.build.targets.sdist]
include = [
    "pcas",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
