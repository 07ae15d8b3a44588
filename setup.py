"""Backward-compatible setuptools entrypoint.

SubCorr is configured via `pyproject.toml` (PEP 621 + setuptools). This
stub only keeps legacy `python setup.py ...` tooling working.
"""

from setuptools import setup

setup()
