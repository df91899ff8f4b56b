"""Storage module for conversation state and persistence.

This module holds the thread tree data model:
- Messages (user and model entries, paired into exchanges)
- Insight panels attached to topic threads
- Threads and the ordered thread tree
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import settings


def slugify(name: str) -> str:
    """Derive a stable id from a display name.

    Args:
        name: Topic or panel title

    Returns:
        Lowercase dash-separated slug, e.g. "Shadow Realm" -> "shadow-realm"
    """
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Role(Enum):
    """Message authors."""

    USER = "user"
    MODEL = "model"


class PanelStatus(Enum):
    """Lifecycle states of an insight panel."""

    LOADING = "loading"
    STREAMING = "streaming"
    LOADED = "loaded"
    ERROR = "error"


@dataclass
class Message:
    """A single user or model entry in a thread."""

    id: str
    role: Role
    text: str = ""
    images: List[str] = field(default_factory=list)
    from_companion: bool = False
    suggestions: List[str] = field(default_factory=list)
    milestone: Optional[Dict[str, str]] = None
    feedback: Optional[str] = None
    show_upgrade: bool = False
    notice: bool = False  # system-authored text, not a real model reply

    @classmethod
    def user(
        cls,
        text: str,
        images: Optional[List[str]] = None,
        from_companion: bool = False,
    ) -> "Message":
        """Create a user entry with a generated ID."""
        return cls(
            id=str(uuid.uuid4()),
            role=Role.USER,
            text=text,
            images=list(images or []),
            from_companion=from_companion,
        )

    @classmethod
    def model(
        cls,
        text: str = "",
        show_upgrade: bool = False,
        notice: bool = False,
    ) -> "Message":
        """Create a model entry with a generated ID."""
        return cls(
            id=str(uuid.uuid4()),
            role=Role.MODEL,
            text=text,
            show_upgrade=show_upgrade,
            notice=notice or show_upgrade,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
        }
        if self.images:
            data["images"] = self.images
        if self.from_companion:
            data["from_companion"] = True
        if self.suggestions:
            data["suggestions"] = self.suggestions
        if self.milestone:
            data["milestone"] = self.milestone
        if self.feedback:
            data["feedback"] = self.feedback
        if self.show_upgrade:
            data["show_upgrade"] = True
        if self.notice:
            data["notice"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Build a message from its serialized form."""
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            text=data.get("text", ""),
            images=data.get("images", []),
            from_companion=data.get("from_companion", False),
            suggestions=data.get("suggestions", []),
            milestone=data.get("milestone"),
            feedback=data.get("feedback"),
            show_upgrade=data.get("show_upgrade", False),
            notice=data.get("notice", False),
        )


@dataclass
class Exchange:
    """One user message paired with the model response to it."""

    user: Message
    model: Message


@dataclass
class InsightPanel:
    """A named knowledge sub-document attached to a thread."""

    id: str
    title: str
    content: str = ""
    status: PanelStatus = PanelStatus.LOADING
    is_unread: bool = False
    feedback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "status": self.status.value,
            "is_unread": self.is_unread,
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InsightPanel":
        """Build a panel from its serialized form."""
        return cls(
            id=data["id"],
            title=data.get("title", data["id"]),
            content=data.get("content", ""),
            status=PanelStatus(data.get("status", PanelStatus.LOADED.value)),
            is_unread=data.get("is_unread", False),
            feedback=data.get("feedback"),
        )


@dataclass
class ActiveGoal:
    """The current objective tracked for a thread."""

    description: str
    is_completed: bool = False


@dataclass
class Thread:
    """A conversation bucket: the catch-all thread or a topic thread."""

    id: str
    title: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_interaction_at: Optional[datetime] = None
    topic_name: Optional[str] = None
    category: Optional[str] = None
    progress: Optional[int] = None
    pinned: bool = False
    active_goal: Optional[ActiveGoal] = None
    panels: Dict[str, InsightPanel] = field(default_factory=dict)
    panel_order: List[str] = field(default_factory=list)
    inventory: List[str] = field(default_factory=list)
    last_trailer_at: Optional[datetime] = None
    panels_initialized: bool = False  # template panels are created only once

    @property
    def is_catch_all(self) -> bool:
        """Check if this is the reserved catch-all thread."""
        return self.id == settings.catch_all_thread_id

    @property
    def sort_timestamp(self) -> float:
        """Timestamp used for recency ordering."""
        return (self.last_interaction_at or self.created_at).timestamp()

    def touch(self) -> None:
        """Record an interaction now."""
        self.last_interaction_at = datetime.now()

    def find_message(self, message_id: str) -> Optional[Message]:
        """Find a message by ID."""
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def remove_messages(self, message_ids: List[str]) -> List[Message]:
        """Remove messages by ID.

        Args:
            message_ids: IDs of the messages to remove

        Returns:
            Removed messages in their original thread order
        """
        wanted = set(message_ids)
        removed = [m for m in self.messages if m.id in wanted]
        self.messages = [m for m in self.messages if m.id not in wanted]
        return removed

    def exchanges(self) -> List[Exchange]:
        """Pair each user message with the model message that follows it."""
        pairs = []
        for current, following in zip(self.messages, self.messages[1:]):
            if current.role is Role.USER and following.role is Role.MODEL:
                pairs.append(Exchange(user=current, model=following))
        return pairs

    def ordered_panels(self) -> List[InsightPanel]:
        """Get panels in display order."""
        return [self.panels[pid] for pid in self.panel_order if pid in self.panels]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at.isoformat(),
            "last_interaction_at": _format_dt(self.last_interaction_at),
            "topic_name": self.topic_name,
            "category": self.category,
            "progress": self.progress,
            "pinned": self.pinned,
            "active_goal": (
                {
                    "description": self.active_goal.description,
                    "is_completed": self.active_goal.is_completed,
                }
                if self.active_goal
                else None
            ),
            "panels": {pid: p.to_dict() for pid, p in self.panels.items()},
            "panel_order": self.panel_order,
            "inventory": self.inventory,
            "last_trailer_at": _format_dt(self.last_trailer_at),
            "panels_initialized": self.panels_initialized,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thread":
        """Build a thread from its serialized form."""
        goal_data = data.get("active_goal")
        return cls(
            id=data["id"],
            title=data.get("title", data["id"]),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=_parse_dt(data.get("created_at")) or datetime.now(),
            last_interaction_at=_parse_dt(data.get("last_interaction_at")),
            topic_name=data.get("topic_name"),
            category=data.get("category"),
            progress=data.get("progress"),
            pinned=data.get("pinned", False),
            active_goal=(
                ActiveGoal(
                    description=goal_data["description"],
                    is_completed=goal_data.get("is_completed", False),
                )
                if goal_data
                else None
            ),
            panels={
                pid: InsightPanel.from_dict(p)
                for pid, p in data.get("panels", {}).items()
            },
            panel_order=data.get("panel_order", []),
            inventory=data.get("inventory", []),
            last_trailer_at=_parse_dt(data.get("last_trailer_at")),
            panels_initialized=data.get("panels_initialized", bool(data.get("panels"))),
        )


def thread_sort_key(thread: Thread) -> Tuple[bool, bool, float]:
    """Sort key: catch-all first, then pinned, then most recent."""
    return (not thread.is_catch_all, not thread.pinned, -thread.sort_timestamp)


@dataclass
class ThreadTree:
    """All threads, their display order and the active thread."""

    threads: Dict[str, Thread] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    active_id: str = field(default_factory=lambda: settings.catch_all_thread_id)

    @classmethod
    def create(cls) -> "ThreadTree":
        """Create a tree holding only the catch-all thread."""
        tree = cls()
        tree.ensure_catch_all()
        return tree

    @property
    def catch_all(self) -> Thread:
        """Get the catch-all thread."""
        return self.threads[settings.catch_all_thread_id]

    @property
    def active(self) -> Thread:
        """Get the active thread, falling back to the catch-all."""
        return self.threads.get(self.active_id) or self.catch_all

    def ensure_catch_all(self) -> Thread:
        """Create the catch-all thread if it is missing."""
        thread = self.threads.get(settings.catch_all_thread_id)
        if thread is None:
            thread = Thread(
                id=settings.catch_all_thread_id,
                title=settings.catch_all_thread_title,
            )
            self.threads[thread.id] = thread
        if thread.id not in self.order:
            self.order.insert(0, thread.id)
        return thread

    def get(self, thread_id: str) -> Optional[Thread]:
        """Get a thread by ID."""
        return self.threads.get(thread_id)

    def add(self, thread: Thread) -> Thread:
        """Add a thread, or return the existing one with the same ID."""
        existing = self.threads.get(thread.id)
        if existing is not None:
            return existing
        self.threads[thread.id] = thread
        self.order.append(thread.id)
        return thread

    def remove(self, thread_id: str) -> bool:
        """Remove a thread. The catch-all thread cannot be removed.

        Returns:
            True if the thread was removed
        """
        if thread_id == settings.catch_all_thread_id or thread_id not in self.threads:
            return False
        del self.threads[thread_id]
        self.order = [tid for tid in self.order if tid != thread_id]
        if self.active_id == thread_id:
            self.active_id = settings.catch_all_thread_id
        return True

    def sort(self) -> None:
        """Re-sort the thread order (catch-all, pinned, recency)."""
        self.order = [
            t.id for t in sorted(self.threads.values(), key=thread_sort_key)
        ]

    def find_message(self, message_id: str) -> Optional[Tuple[Thread, Message]]:
        """Locate a message anywhere in the tree."""
        for thread in self.threads.values():
            msg = thread.find_message(message_id)
            if msg is not None:
                return thread, msg
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "threads": {tid: t.to_dict() for tid, t in self.threads.items()},
            "order": self.order,
            "active_id": self.active_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadTree":
        """Build a tree from its serialized form.

        Missing order entries are appended. A missing catch-all thread is
        not recreated here; the reconciler refuses such a tree on restore.
        """
        threads = {
            tid: Thread.from_dict(t) for tid, t in data.get("threads", {}).items()
        }
        order = [tid for tid in data.get("order", []) if tid in threads]
        order.extend(tid for tid in threads if tid not in order)
        tree = cls(
            threads=threads,
            order=order,
            active_id=data.get("active_id", settings.catch_all_thread_id),
        )
        if tree.active_id not in tree.threads:
            tree.active_id = settings.catch_all_thread_id
        return tree


@dataclass
class TreeEvent:
    """Notification that the thread tree changed."""

    kind: str
    tree: ThreadTree
    thread_id: Optional[str] = None


__all__ = [
    "slugify",
    "Role",
    "PanelStatus",
    "Message",
    "Exchange",
    "InsightPanel",
    "ActiveGoal",
    "Thread",
    "ThreadTree",
    "thread_sort_key",
    "TreeEvent",
]
