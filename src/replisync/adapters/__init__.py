"""
Adapters for replisync.

This package provides adapter layers binding host applications to the engine.
"""

from .rendering import Renderer, RenderBinding

__all__ = [
    'Renderer',
    'RenderBinding',
]
