"""
Constrained classifier module.

Turns untrusted text into one of a fixed set of fan commands through a
single, vocabulary-restricted LLM call and a strict reply parser.
"""
from .classifier import (
    ClassifierError,
    ClassifierTimeoutError,
    ConstrainedClassifier,
    parse_constrained_reply,
)

__all__ = [
    "ClassifierError",
    "ClassifierTimeoutError",
    "ConstrainedClassifier",
    "parse_constrained_reply",
]
