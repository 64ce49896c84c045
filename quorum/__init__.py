"""Quorum: account recovery and project approval engine."""

__version__ = "0.1.0"
