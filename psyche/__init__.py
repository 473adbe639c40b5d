"""Adaptive multi-layer psychographic inference with LLM governance."""

__version__ = "1.0.0"
