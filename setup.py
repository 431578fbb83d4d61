"""
LedgerReplica: a replica-building ingestion pipeline for a sharded ledger network

LedgerReplica pulls cycles, receipts, original transactions and genesis state from a
distributor, reconciles the local replica against it and derives synthetic
Ethereum-style blocks, accounts, transactions, token transfers and account history.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh.readlines() if line.strip() and not line.startswith("#")]

# Get version from the package
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '.'))
from ledgerreplica.units.version import get_version
from ledgerreplica import VERSION

setup(
    name="ledgerreplica",
    version=get_version(VERSION),
    description="Replica ingestion pipeline for sharded ledger distributors",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=['ledgerreplica', 'ledgerreplica.*'], exclude=['tests*']),
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "ledgerreplica=ledgerreplica.cli:cli",
        ],
    },
    python_requires=">=3.10",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Database",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="ledger, replica, indexer, evm, blocks",
)
