[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "linksim"
version = "4.0.0"
description = "Simulated noisy point-to-point channel with a selective-repeat data link protocol"
requires-python = ">=3.10"
dependencies = []
keywords = ["data link", "selective repeat", "sliding window", "crc32", "network simulation", "education"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
linksim = "linksim.datalink:main"

[tool.hatch.build.targets.wheel]
packages = ["linksim"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
