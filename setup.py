#!/usr/bin/env python3
"""
Setup configuration for spotterm
A terminal Spotify client with Connect device control and optional local playback
"""

from setuptools import setup, find_packages

# Read README for long description
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Core requirements (always installed)
core_requirements = [
    "spotipy>=2.23.0",
    "click>=8.1.7",
    "pyyaml>=6.0.1",
    "requests>=2.31.0",
    "colorama>=0.4.6",
    "python-dotenv>=1.0.0",
]

setup(
    name="spotterm",
    version="0.1.0",
    author="spotterm contributors",
    description="Terminal Spotify client: control Connect devices or play locally",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["spotterm", "spotterm.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio :: Players",
    ],
    python_requires=">=3.10",
    install_requires=core_requirements,
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
            "black>=23.11.0",
            "flake8>=6.1.0",
            "mypy>=1.7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "spotterm=spotterm.main:cli",
        ],
        # Audio backend packages register under "spotterm.audio_backends"
    },
    keywords="spotify terminal player connect cli",
)
