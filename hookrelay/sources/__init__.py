"""Messaging sources that feed events into the relay."""

from hookrelay.sources.base import BROADCAST_ADDRESS, MessagingSource, SourceMessage
from hookrelay.sources.signal_source import SignalSource
from hookrelay.sources.state import ReadyState, SourcePhase

__all__ = [
    "BROADCAST_ADDRESS",
    "MessagingSource",
    "SourceMessage",
    "SignalSource",
    "ReadyState",
    "SourcePhase",
]
