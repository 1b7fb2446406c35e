"""
Provider adapters for the episode pipeline.

Wraps the content-generation provider and the notification dispatcher.
"""

from .notifications import LoggingNotifier, Notifier, RecordingNotifier
from .openai_client import Completion, OpenAIContentProvider

__all__ = [
    "Completion",
    "LoggingNotifier",
    "Notifier",
    "OpenAIContentProvider",
    "RecordingNotifier",
]
