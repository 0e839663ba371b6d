#!/usr/bin/env python3
"""
Setup script for the shadowrepl package
"""

from pathlib import Path

from setuptools import setup, find_packages

HERE = Path(__file__).resolve().parent


def read_requirements(path):
    """Runtime requirements only; pytest tooling goes to the dev extra"""
    requirements = []
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if not line or line.startswith('#') or line.startswith('pytest'):
            continue
        requirements.append(line)
    return requirements


setup(
    name="shadowrepl",
    version="1.0.0",
    description="Ordered change-event migration into MySQL through shadow tables",
    long_description=(HERE / 'README.md').read_text(encoding='utf-8'),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=read_requirements(HERE / 'requirements.txt'),
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-mock>=3.12.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "shadowrepl=shadowrepl.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Topic :: Database",
    ],
    keywords="mysql, migration, change-data-capture, shadow-tables, dead-letter-queue",
)
