[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "blockserve"
version = "0.1.0"
description = "Building blocks for a network block-device image server: configuration, alt server lists, CRC-32 lists, cache maps and image files"
requires-python = ">=3.10"
dependencies = []
keywords = ["block device", "network", "image", "replication", "proxy", "cache map", "crc32", "ini"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["blockserve*"]

[tool.pytest.ini_options]
addopts = "-ra"
