"""
SDK for Variation Guard.

Provides adapters to the external generation and description capabilities.
"""

from .openai_client import OpenAIDescriber, OpenAIImageGenerator

__all__ = ["OpenAIDescriber", "OpenAIImageGenerator"]
