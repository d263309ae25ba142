#!/usr/bin/env python3
"""
Setup script for Fly8 Sync

Install with:
    pip install -e .

With test tooling:
    pip install -e ".[dev]"
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = ""
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")

requirements = [
    "httpx>=0.26.0",
    "python-socketio[asyncio_client]>=5.10.0",
    "pydantic>=2.5.0",
    "rich>=13.7.0",
    "python-dotenv>=1.0.0",
]

setup(
    name="fly8sync",
    version="1.0.0",
    description="Fly8 admin dashboard - live synchronization layer",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Fly8 Team",
    license="MIT",
    packages=find_packages(include=["fly8sync", "fly8sync.*"]),
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "faker>=22.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fly8sync=fly8sync.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: AsyncIO",
    ],
    keywords="socketio cache polling dashboard realtime",
)
