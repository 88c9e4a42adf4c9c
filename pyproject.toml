[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "obstore"
version = "0.1.0"
description = "Storage core of a small teaching database: SQL statement structures, a paged disk buffer pool and simple transactions"
requires-python = ">=3.10"
dependencies = []
keywords = ["database", "buffer pool", "paged file", "transaction", "storage engine"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["obstore"]

[tool.pytest.ini_options]
addopts = "-ra"
