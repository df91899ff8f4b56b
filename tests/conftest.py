"""Shared pytest fixtures."""

import pytest

from tagwise.storage.blob_store import MemoryBlobStore
from tagwise.storage import Message, Role, Thread, ThreadTree


@pytest.fixture
def store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def topic_thread() -> Thread:
    thread = Thread(id="shadow-realm", title="Shadow Realm", topic_name="Shadow Realm")
    thread.category = "RPG"
    thread.progress = 40
    return thread


@pytest.fixture
def tree_with_history(topic_thread) -> ThreadTree:
    tree = ThreadTree.create()
    topic_thread.messages.extend([
        Message.user("Where is the blacksmith?"),
        Message(id="m-1", role=Role.MODEL, text="North of the bridge."),
    ])
    tree.add(topic_thread)
    return tree
