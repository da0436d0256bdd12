[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wlampctl"
version = "0.1.0"
description = "Command-line control of the Apache server in a XAMPP installation"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["xampp", "apache", "httpd", "virtualhost", "cli"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
wlampctl = "wlampctl.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["wlampctl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
