#!/usr/bin/env python3
"""
Setup script for the UDP <-> bus bridge
"""

from setuptools import setup, find_namespace_packages

setup(
    name="udp-bus-bridge",
    version="0.1.0",
    description="Bidirectional bridge between a publish/subscribe bus and UDP using JSON envelopes",
    packages=find_namespace_packages(include=["bridge*", "client*", "shared*"]),
    install_requires=[
        "click>=8.1.7",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "aioconsole>=0.8.1",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.11",
    entry_points={
        'console_scripts': [
            'udp-bridge=bridge.cli:main',
            'udp-bridge-client=client.udp_cli:main',
        ],
    },
)
