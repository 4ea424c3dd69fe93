[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vrelay"
version = "0.1.0"
description = "Rule-based proxy relay: TOML configuration, outbound chains, domain and IP routing, transparent listeners and traffic counters"
requires-python = ">=3.11"
keywords = [
    "proxy",
    "relay",
    "routing",
    "geoip",
    "geosite",
    "dokodemo-door",
    "tproxy",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
vrelay = "vrelay.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["vrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
