"""
Setup configuration for the Bitwarden secret operator.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read version from __version__.py
version = {}
with open("bitwarden_operator/__version__.py") as f:
    exec(f.read(), version)

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8")

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
with open(requirements_file) as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

# Development requirements
dev_requirements_file = Path(__file__).parent / "requirements-dev.txt"
dev_requirements = []
with open(dev_requirements_file) as f:
    dev_requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="bitwarden-secret-operator",
    version=version["__version__"],
    description="Kubernetes operator syncing Bitwarden vault items into Secrets",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "dev": dev_requirements,
        "all": requirements + dev_requirements,
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Systems Administration",
    ],
    keywords=[
        "kubernetes",
        "operator",
        "bitwarden",
        "secrets",
        "asyncio",
    ],
    entry_points={
        "console_scripts": [
            "bitwarden-secret-operator=bitwarden_operator.main:main",
        ],
    },
    zip_safe=False,
)
