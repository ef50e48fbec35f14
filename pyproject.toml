[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "apkregress"
version = "0.1.0"
description = "Test reverse dependencies of an APK package for regressions against a candidate repository"
requires-python = ">=3.10"
dependencies = []
keywords = ["apk", "melange", "regression", "testing", "reverse-dependencies"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
apkregress = "apkregress.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["apkregress"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
