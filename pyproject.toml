[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ebuslink"
version = "0.1.0"
description = "eBUS protocol core: frames, CRC, prioritised bus transactions, observer events, collision monitoring and initiator address selection"
requires-python = ">=3.10"
dependencies = []
keywords = ["ebus", "heating", "home-automation", "protocol", "fieldbus", "crc8"]
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
    "Topic :: Home Automation",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ebuslink"]

[tool.pytest.ini_options]
addopts = "-ra"
