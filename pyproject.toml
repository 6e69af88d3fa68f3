[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "enclaver"
version = "0.1.0"
description = "Package applications as Nitro Enclave images, with manifest validation, egress policy, attestation API and supervisor building blocks."
requires-python = ">=3.10"
keywords = ["enclave", "nitro", "attestation", "docker", "egress", "manifest"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml>=6.0",
    "cryptography>=41.0",
    "httpx>=0.26",
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
enclaver = "enclaver.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["enclaver"]

[tool.hatch.build.targets.sdist]
include = ["enclaver", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
