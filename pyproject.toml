[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "iotjobs"
version = "0.1.0"
description = "Device-side client for a cloud jobs service over MQTT: receives job documents, executes them and reports their status."
requires-python = ">=3.10"
dependencies = [
    "paho-mqtt",
]
keywords = ["mqtt", "iot", "jobs", "device", "job-execution"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: Communications",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
iotjobs = "iotjobs.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["iotjobs"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
