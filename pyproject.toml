[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "natlb"
version = "0.1.0"
description = "Data path of a NAT load balancer over byte-buffer packets: IPv4 stack, NAT rewriting, weighted round-robin scheduling, session sync and health checks"
requires-python = ">=3.10"
dependencies = []
keywords = ["nat", "load-balancer", "ipv4", "snat", "dnat", "networking", "wrr", "arp"]
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
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["natlb"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
