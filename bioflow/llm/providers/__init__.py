"""LLM provider adapters."""

from .base import BaseProvider

__all__ = ["BaseProvider"]
