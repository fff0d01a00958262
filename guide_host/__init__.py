"""Rendering host and fallback overlay process for Screen Guide."""
