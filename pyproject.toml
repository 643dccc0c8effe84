[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "forseti"
version = "0.1.0"
description = "Flask service components exposing real-time public transport data: departures, parkings, equipments and free-floating vehicles"
requires-python = ">=3.10"
keywords = ["public transport", "real-time", "departures", "parkings", "free-floating", "flask"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Framework :: Flask",
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
    "flask",
    "requests",
    "paramiko",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["forseti"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
