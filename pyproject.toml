[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blegatt"
version = "0.1.0"
description = "Bluetooth Low Energy GATT attribute store, service drivers, SMP pairing and HCI helpers"
requires-python = ">=3.10"
keywords = [
    "bluetooth",
    "ble",
    "gatt",
    "hci",
    "smp",
    "pairing",
    "midi",
    "sqlite",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications",
    "Topic :: Multimedia :: Sound/Audio :: MIDI",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["blegatt"]

[tool.hatch.build.targets.sdist]
include = [
    "blegatt",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
