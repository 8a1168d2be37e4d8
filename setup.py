#!/usr/bin/env python
"""
setup.py bridge for pip versions without PEP 660 editable installs.
Project metadata, dependencies and the `sa`/`sapkg` entry points live in pyproject.toml.
"""

from setuptools import setup

setup()
