"""Skillgate - skill installation, trust policy and sandboxed execution."""

__version__ = "0.1.0"

from skillgate.config import Config

__all__ = ["Config", "__version__"]
