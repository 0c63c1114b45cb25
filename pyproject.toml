[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clairnotify"
version = "0.1.0"
description = "Vulnerability notification service: discovers update operations, builds per-manifest notifications and delivers them over webhooks, AMQP or STOMP."
requires-python = ">=3.10"
keywords = [
    "vulnerability",
    "notifications",
    "security",
    "webhook",
    "amqp",
    "stomp",
    "wsgi",
    "container",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
]
dependencies = [
    "pyjwt",
    "requests",
    "pika",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
clairnotify-receiver = "clairnotify.receiver:main"

[tool.hatch.build.targets.wheel]
packages = ["clairnotify"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
