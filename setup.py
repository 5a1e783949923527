#!/usr/bin/env python3
"""
FleetWatch Setup Configuration
Fleet Health and Adaptive Failover Core
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="fleetwatch",
    version="1.0.0",
    description="Fleet health probing, presence tracking and adaptive provider failover",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["fleetwatch", "fleetwatch.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Monitoring",
        "Framework :: AsyncIO",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "fleetwatch=fleetwatch.cli:main",
        ],
    },
    include_package_data=True,
    keywords="fleet health monitoring circuit-breaker failover presence asyncio",
)
