[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fiberpool"
version = "0.1.1"
description = "A pool of worker threads that share cooperative tasks, with interruption, thread binding and futures"
requires-python = ">=3.10"
dependencies = []
keywords = ["thread pool", "fibers", "tasks", "futures", "concurrency", "scheduler", "work sharing"]
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
    "Topic :: Software Development :: Libraries",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fiberpool"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
