[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kirostream"
version = "0.1.0"
description = "Decoder for binary event streams that turns framed messages into Anthropic-style SSE events with tool-call tracking"
requires-python = ">=3.10"
dependencies = []
keywords = ["event-stream", "sse", "parser", "streaming", "tool-calls"]
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
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kirostream"]

[tool.pytest.ini_options]
addopts = "-ra"
