"""Sender interface for outbound tasks.

A sender performs the side effect for one task kind. It either returns
(optionally with a small result dict stored on the task) or raises. Senders
never retry; every retry decision belongs to the dispatcher's retry policy.
"""
from abc import ABC, abstractmethod
from typing import Optional


class SendError(Exception):
    """Transient failure. The task is retried per policy."""


class PermanentSendError(SendError):
    """The remote side rejected the task irrecoverably; do not retry."""


class Sender(ABC):
    """Abstract base class for task senders."""

    @abstractmethod
    def send(self, kind, payload: dict) -> Optional[dict]:
        """Perform the side effect described by `payload`."""
        raise NotImplementedError


__all__ = ["Sender", "SendError", "PermanentSendError"]
