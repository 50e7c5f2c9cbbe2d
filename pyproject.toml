[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tacd"
version = "0.1.0"
description = "Topic broker with retained values, REST and MQTT-over-WebSocket access, persistent state and backlight control"
requires-python = ">=3.10"
keywords = ["broker", "mqtt", "websocket", "rest", "pubsub", "aiohttp", "backlight"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["tacd"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
