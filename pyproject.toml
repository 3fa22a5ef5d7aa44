[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wireguard"
version = "0.1.0"
description = "WireGuard building blocks: UDP binds, an allowed-IPs routing trie, cookie MACs and Noise key helpers"
requires-python = ">=3.10"
dependencies = [
    "pynacl",
]
keywords = ["wireguard", "vpn", "udp", "noise", "networking", "routing", "cookie"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Security :: Cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wireguard"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
