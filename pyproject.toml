[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nrfdfu"
version = "0.4.0"
description = "Nordic Secure DFU protocol and DFU package reader for firmware updates over BLE"
requires-python = ">=3.10"
keywords = ["nrf", "dfu", "ble", "bluetooth", "firmware", "bootloader", "softdevice"]
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
    "Framework :: AsyncIO",
    "Topic :: Software Development :: Embedded Systems",
]
dependencies = [
    "tqdm",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["nrfdfu"]

[tool.pytest.ini_options]
addopts = "-ra"
