[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dcube"
version = "0.1.0"
description = "Data cube group-by view benchmark and dense linear-algebra timing runs"
requires-python = ">=3.10"
keywords = ["benchmark", "data cube", "olap", "group-by", "red-black tree", "linear algebra"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Benchmark",
]
dependencies = [
    "numpy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
dcube = "dcube.cli:main"
dcube-blas = "dcube.blasbench:main"

[tool.hatch.build.targets.wheel]
packages = ["dcube"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
