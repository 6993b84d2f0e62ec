[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ibusdrive"
version = "0.1.0"
description = "iBUS receiver protocol, PC link frames, RC transmitter input and ZLTECH CANopen motor driver logic for a differential-drive robot"
requires-python = ">=3.10"
dependencies = []
keywords = ["ibus", "flysky", "rc", "canopen", "pdo", "sdo", "robot", "motor-driver", "telemetry"]
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
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN) :: CANopen",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ibusdrive"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
