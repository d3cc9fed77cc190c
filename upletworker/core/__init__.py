"""Core building blocks shared by the backends."""

from .registry import Registry

__all__ = ["Registry"]
