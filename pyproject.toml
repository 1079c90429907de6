[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "roche_limit"
version = "0.1.0"
description = "SQLite-backed storage for IP rules, API keys, user sessions, login failures, CSRF tokens and a hash-chained audit log"
requires-python = ">=3.10"
dependencies = []
keywords = ["authentication", "authorization", "sqlite", "api-keys", "audit-log", "ip-rules", "sessions", "csrf"]
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
    "Topic :: Database",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["roche_limit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
strict = true
