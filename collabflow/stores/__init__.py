"""Collaborator store interfaces and in-process implementations."""

from __future__ import annotations

from .base import AlertStore, MessageStore, TaskStore
from .inmemory import InMemoryAlertStore, InMemoryMessageStore, InMemoryTaskStore

__all__ = [
    "AlertStore",
    "MessageStore",
    "TaskStore",
    "InMemoryAlertStore",
    "InMemoryMessageStore",
    "InMemoryTaskStore",
]
