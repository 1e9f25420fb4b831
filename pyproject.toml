[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aribts"
version = "0.1.0"
description = "Tools for processing ARIB MPEG-2 transport streams: PCR clocks, packet sources, ring-file recording, service filtering, start seeking and EIT airtime tracking"
requires-python = ">=3.10"
dependencies = []
keywords = ["arib", "mpeg-ts", "transport-stream", "eit", "pcr", "isdb", "psi"]
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
    "Topic :: Multimedia :: Video",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["aribts"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
