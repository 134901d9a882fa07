import platform
import re
import sys
from pathlib import Path

from setuptools import find_packages, setup


def get_requires():
    requires = [
        "aioredis-cluster>=2.3.0",
        "async-timeout",
        "attrs",
        "kubernetes",
    ]
    if platform.python_implementation() == "CPython":
        requires.append("hiredis")
    return requires


if sys.version_info < (3, 8):
    raise RuntimeError("valkey_reconciler doesn't support Python version prior 3.8")


def get_version() -> str:
    content = Path("src/valkey_reconciler/_version.py").read_text()
    m = re.search(r'^\s*__version__\s*\=\s*[\'"]([^\'""]+)[\'"]', content, re.M)
    assert m
    return m.group(1)


def get_description() -> str:
    return Path("README.md").read_text(encoding="utf-8")


setup(
    name="valkey-reconciler",
    version=get_version(),
    description="Scale and reconcile Valkey clusters running in Kubernetes StatefulSets",
    long_description=get_description(),
    long_description_content_type="text/markdown",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Development Status :: 4 - Beta",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3 :: Only",
        "Operating System :: POSIX",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Clustering",
        "Topic :: Database",
        "Framework :: AsyncIO",
    ],
    platforms=["POSIX"],
    license="MIT",
    package_dir={"": "src"},
    packages=find_packages(
        "src",
        include=["valkey_reconciler", "valkey_reconciler.*"],
    ),
    install_requires=get_requires(),
    python_requires=">=3.8",
    include_package_data=True,
    zip_safe=False,
    entry_points={
        "console_scripts": [
            "valkey-reconciler = valkey_reconciler.__main__:main",
        ],
    },
    extras_require={
        "devel": [
            "flake8",
            "mypy",
            "isort>=5.0.0, <6.0.0",
            "mock>=4.0.0",
            "black==22.3.0",
            "coverage",
            "pytest",
            "pytest-cov",
            "pytest-mock",
            "pytest-asyncio",
            "pytest-xdist",
        ],
    },
)
