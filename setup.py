#!/usr/bin/env python3
"""
Setup script for bgd-manager.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["bgd_manager", "bgd_manager.*"]),
)
