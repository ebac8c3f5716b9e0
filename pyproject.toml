[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "spotcore"
version = "0.1.0"
description = "Building blocks for a streaming audio client: range sets, audio decryption, credentials, caching, CDN URLs, access-point resolution and ranged file fetching."
requires-python = ">=3.10"
keywords = ["audio", "streaming", "cache", "range-set", "aes-ctr", "cdn"]
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
    "Topic :: Multimedia :: Sound/Audio :: Players",
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
packages = ["spotcore"]

[tool.pytest.ini_options]
addopts = "-ra"
