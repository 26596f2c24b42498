from __future__ import annotations


class MRFError(Exception):
    """Base class for MRF relabeling errors."""


class InvalidArgument(MRFError, ValueError):
    pass


class NotConfigured(MRFError, RuntimeError):
    pass


class InvalidState(MRFError, RuntimeError):
    pass


class ClassifierError(MRFError, RuntimeError):
    """Raised when the distance source hands back unusable distances."""
