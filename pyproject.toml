[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mediaservices"
version = "0.1.0"
description = "WebSocket relay, HTTP server with CORS and rate limiting, and an RTSP relay server for live media and telemetry"
requires-python = ">=3.10"
keywords = [
    "websocket",
    "relay",
    "rtsp",
    "rtp",
    "cors",
    "rate-limiting",
    "streaming",
    "aiohttp",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "aiohttp>=3.9",
    "cachetools>=5.3",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
mediaservices-socket = "mediaservices.socket.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["mediaservices"]

[tool.hatch.build.targets.sdist]
include = [
    "mediaservices",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
