#!/usr/bin/env python3
"""Setup script for the AIDL reverser"""

from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="aidl-reverser",
    version="1.0.0",
    author="AIDL Reverser Contributors",
    description="Rebuild AIDL interfaces of running Android binder services",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["aidl_reverser", "aidl_sources"],
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Disassemblers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.8",
    install_requires=[],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "aidl-reverser=aidl_reverser:main",
        ],
    },
)
