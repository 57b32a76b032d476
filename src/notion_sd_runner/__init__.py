"""Notion-backed Stable Diffusion job runner."""

__version__ = "0.1.0"
