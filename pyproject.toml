[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mluplugin"
version = "0.1.0"
description = "Device lists, topology-aware allocation and container wiring for Cambricon MLU accelerators in Kubernetes"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "device-plugin",
    "mlu",
    "accelerator",
    "allocation",
    "mlulink",
    "sriov",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mluplugin"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
