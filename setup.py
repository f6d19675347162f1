#!/usr/bin/env python3
"""
ReelNet Setup Script
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme = Path(__file__).parent / "README.md"
long_description = readme.read_text(encoding="utf-8") if readme.exists() else ""

# Read requirements
requirements = Path(__file__).parent / "reelnet_requirements.txt"
install_requires = []
if requirements.exists():
    install_requires = requirements.read_text().strip().split('\n')
    install_requires = [r.strip() for r in install_requires if r.strip() and not r.startswith('#')]

setup(
    name="reelnet",
    version="0.4.0",
    description="Peer-to-peer media node: gossip discovery, catalog sync, coordination-free replication",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="ReelNet Team",
    license="MIT",
    packages=find_packages(include=["reelnet", "reelnet.*"]),
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.1.0",
            "black>=24.0.0",
            "flake8>=7.0.0",
            "mypy>=1.8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "reelnet-node=reelnet.node:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Distributed Computing",
        "Topic :: Multimedia :: Video",
    ],
    keywords="p2p gossip streaming replication catalog ethereum",
)
