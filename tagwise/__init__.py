"""Tagwise - directive-driven conversation engine for a gaming companion."""

from .engine import Engine
from .orchestrator.quota import Tier
from .orchestrator.reconciler import ConversationReconciler, SendOutcome, SendResult

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "Tier",
    "ConversationReconciler",
    "SendOutcome",
    "SendResult",
]
