[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "qvmfiletools"
version = "0.1.0"
description = "File copy, open-in-VM and file-editor services over inter-VM byte streams"
requires-python = ">=3.10"
keywords = ["qrexec", "file transfer", "filecopy", "disposable vm", "crc32"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
qvm-file-receiver = "qvmfiletools.receiver:main"
qvm-file-sender = "qvmfiletools.sender:main"
qvm-open-in-vm = "qvmfiletools.open_in_vm:main"
qvm-file-editor = "qvmfiletools.vm_file_editor:main"

[tool.hatch.build.targets.wheel]
packages = ["qvmfiletools"]

[tool.hatch.build.targets.sdist]
include = ["qvmfiletools", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
