"""Caller-side overlay delivery and analysis pipeline for Screen Guide."""

from .version import __version__

__all__ = ["__version__"]
