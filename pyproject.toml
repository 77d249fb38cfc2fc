[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "caelis"
version = "0.1.0"
description = "Command execution runtime with sandbox routing, host fallback and coded errors for agent tools"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "sandbox",
    "execution",
    "docker",
    "seatbelt",
    "agent",
    "tools",
    "subprocess",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["caelis"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
