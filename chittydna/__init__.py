"""
chittydna - Private behavioral learning for tool-using assistants.

Observes tool usage, learns workflows into an encrypted vault, and exports
them as signed, portable documents.
"""

from .core import LearningCore
from .types import ChittyDNA, ConflictPolicy, EventKind, PrivacyMode

try:
    from importlib.metadata import version

    __version__ = version("chittydna")
except Exception:
    __version__ = "0.0.0"

__all__ = ["LearningCore", "ChittyDNA", "ConflictPolicy", "EventKind", "PrivacyMode"]
