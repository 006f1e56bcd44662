#!/usr/bin/env python3
"""
Self-Hosted Stack Deployer - Package Setup

Install with: pip install -e .
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="selfhosted-stack-deployer",
    version="1.0.0",
    author="Self-Hosted Stack Deployer",
    author_email="",
    description="Phased, health-gated deployment tool for a self-hosted docker compose stack",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Systems Administration",
    ],
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0.1",
        "requests>=2.31.0",
        "rich>=13.7.0",
        "cryptography>=42.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "mypy>=1.7.0",
            "ruff>=0.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "stackdeploy=stackdeploy.__main__:main",
            "stack-deploy=stackdeploy.__main__:main",
        ],
    },
)
