"""Service source generation from parsed workflow models."""

from .generator import TYPE_MAPPING, GeneratedCode, generate, python_type

__all__ = ['TYPE_MAPPING', 'GeneratedCode', 'generate', 'python_type']
