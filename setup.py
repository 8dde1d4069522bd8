"""Setup configuration for SecretOps CLI."""

import os
import sys

from setuptools import find_packages, setup

# Get version from package
here = os.path.abspath(os.path.dirname(__file__))
sys.path.insert(0, here)
from secretops import __author__, __version__  # noqa: E402

# Get the long description from the README file
with open(os.path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="secretops-cli",
    version=__version__,
    description="Secret lifecycle controller for Kubernetes workloads",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author=__author__,
    keywords="kubernetes secrets rotation vault cli",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"secretops": ["templates/*.j2"]},
    python_requires=">=3.8",
    install_requires=[
        "click>=8.0.0",
        "pyyaml>=6.0",
        "jinja2>=3.0.0",
        "cryptography>=3.4.0",
        "jsonschema>=4.0.0",
        "tenacity>=8.0.0",
        "hvac>=1.1.0",
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.12.0",
            "mypy>=0.991",
        ],
    },
    entry_points={
        "console_scripts": [
            "secretops=secretops.cli:cli",
        ],
    },
)
