[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "carbonlite"
version = "0.1.0"
description = "In-memory Graphite metric cache with a carbonlink query server and configuration loader"
requires-python = ">=3.11"
dependencies = []
keywords = ["graphite", "carbon", "metrics", "cache", "carbonlink", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["carbonlite"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
