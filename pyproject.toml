[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "memifkit"
version = "0.1.0"
description = "Shared-memory packet interface (memif) slave client with echo responder and sender tools"
requires-python = ">=3.10"
dependencies = []
keywords = ["memif", "shared memory", "packet", "networking", "geneve", "icmp", "arp"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
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

[project.scripts]
memif-echo-client = "memifkit.echo_client:main"
memif-echo-sender = "memifkit.echo_sender:main"

[tool.hatch.build.targets.wheel]
packages = ["memifkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
