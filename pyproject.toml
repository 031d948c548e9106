[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eppicker"
version = "0.1.0"
description = "Endpoint picker for inference gateways: pool datastore, saturation detection, request routing and external-processing stream handling."
requires-python = ">=3.10"
dependencies = []
keywords = ["inference", "gateway", "endpoint-picker", "load-balancing", "ext-proc", "llm"]
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
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["eppicker"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
