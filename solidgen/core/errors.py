"""
Exception hierarchy shared by the generation pipeline.

The retry orchestrator classifies failures by type: configuration and
transport faults end a turn, geometry faults raised inside a generated
script become sandbox rejections and drive the repair loop.
"""

from __future__ import annotations


class SolidGenError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(SolidGenError):
    """Missing or invalid provider credential. Never retried."""


class TransportError(SolidGenError):
    """Provider/network failure or a malformed response on a JSON channel."""


class GeometryError(SolidGenError, ValueError):
    """A primitive was called with degenerate input or produced an empty solid."""


class ScriptRejected(SolidGenError):
    """Static-check or shape-check failure; the message is shown to the model as-is."""


class ImageValidationError(SolidGenError, ValueError):
    """Attachment has the wrong type, is too large, or cannot be decoded."""


class ConversationBusyError(SolidGenError):
    """A turn is already in flight for this conversation."""


class ConversationNotFoundError(SolidGenError, KeyError):
    pass
