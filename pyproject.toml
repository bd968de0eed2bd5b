[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "grpcmw"
version = "0.1.0"
description = "Interceptors and helpers for gRPC calls: retries with backoff, timeouts, request validation, metadata and call contexts."
requires-python = ">=3.10"
dependencies = [
    "grpcio",
]
keywords = ["grpc", "middleware", "interceptor", "retry", "backoff", "timeout", "validation", "metadata"]
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
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["grpcmw"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
