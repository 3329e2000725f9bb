[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wgkit"
version = "0.1.0"
description = "WireGuard building blocks: UDP binds, GSO batching, allowed-IP routing, Noise IK handshake and cookie MACs"
requires-python = ">=3.10"
dependencies = [
    "pynacl",
]
keywords = ["wireguard", "noise", "vpn", "udp", "gso", "allowed-ips", "tunnel"]
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
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wgkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
