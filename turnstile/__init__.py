"""Turnstile: transcript grouping and session control for multi-turn agent conversations."""

__version__ = "0.1.0"
