"""BPMN parsing and structural validation."""

from .model import WorkflowModel
from .parser import ParseError, ValidationResult, parse, validate

__all__ = ['ParseError', 'ValidationResult', 'WorkflowModel', 'parse', 'validate']
