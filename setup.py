import os
import tomllib
from setuptools import setup, find_packages

PROJECT_ROOT = os.path.abspath(os.path.dirname(__file__))

# Parse version from pyproject.toml so release bumps need only modify that file
PYPROJECT_PATH = os.path.join(PROJECT_ROOT, "pyproject.toml")
with open(PYPROJECT_PATH, "rb") as fp:
    VERSION = tomllib.load(fp)["project"]["version"]

setup(
    name="loris-ingest",
    version=VERSION,
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "requests>=2.20",
        "PyYAML>=5.4",
        "pydantic>=2.0",
        "click>=8.0",
        "structlog>=23.1",
        "rich>=13.0",
        "pandas>=1.5",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "loris-ingest=loris_ingest.cli:main",
        ],
    },
)
