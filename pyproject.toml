[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nenya"
version = "0.1.0"
description = "Resilience building blocks for an LLM API gateway: circuit breaking, retry classification and SSE stream relaying"
requires-python = ">=3.10"
dependencies = []
keywords = ["proxy", "gateway", "circuit-breaker", "retry", "sse", "llm"]
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
    "Topic :: Internet :: Proxy Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nenya"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
