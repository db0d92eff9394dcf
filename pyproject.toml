[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "puddlepool"
version = "0.1.0"
description = "Buffer recycling and executor pooling for workloads that allocate the same buffers over and over"
requires-python = ">=3.10"
dependencies = []
keywords = ["memory", "recycling", "allocator", "buffer pool", "executor pool", "round robin", "aligned"]
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
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["puddlepool*"]

[tool.pytest.ini_options]
addopts = "-ra"
