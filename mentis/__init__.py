"""Mentis - an interactive coding assistant for the terminal."""

__version__ = "0.1.0"

from mentis.config import Config

__all__ = ["Config", "__version__"]
