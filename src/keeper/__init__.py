"""Infra-market keeper - drives markets through their lifecycle on chain."""

__version__ = "0.1.0"
