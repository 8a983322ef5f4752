[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "awsquery"
version = "0.1.0"
description = "Clients for AWS query-style services (ELB, Mechanical Turk), request signing, and an in-memory EC2 simulator for tests"
requires-python = ">=3.10"
keywords = ["aws", "elb", "mturk", "ec2", "signing", "simulator"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["awsquery"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
