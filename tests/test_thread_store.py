"""Tests for the thread model, blob stores and debounced persistence."""

import asyncio
import json
import logging
import signal
from datetime import datetime

import pytest

from tagwise.storage import (
    ActiveGoal,
    InsightPanel,
    Message,
    PanelStatus,
    Thread,
    ThreadTree,
    TreeEvent,
    slugify,
)
from tagwise.storage.blob_store import BlobStore, FileBlobStore, MemoryBlobStore
from tagwise.storage import thread_store
from tagwise.storage.thread_store import PersistenceDebouncer


class FlakyStore(MemoryBlobStore):
    """Blob store whose writes fail until told otherwise."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = True

    def set(self, key, value):
        if self.failing:
            raise OSError("disk full")
        super().set(key, value)


@pytest.mark.parametrize(
    "name, slug",
    [
        ("Shadow Realm", "shadow-realm"),
        ("  The Legend of Zelda: Tears of the Kingdom ", "the-legend-of-zelda-tears-of-the-kingdom"),
        ("Baldur's Gate 3", "baldur-s-gate-3"),
        ("!!!", ""),
    ],
)
def test_slugify(name, slug):
    assert slugify(name) == slug


def test_new_tree_has_only_catch_all():
    tree = ThreadTree.create()

    assert tree.order == ["everything-else"]
    assert tree.active.is_catch_all
    assert tree.catch_all.title == "Everything else"


def test_catch_all_cannot_be_removed():
    tree = ThreadTree.create()

    assert not tree.remove("everything-else")
    assert "everything-else" in tree.threads


def test_removing_active_thread_falls_back_to_catch_all():
    tree = ThreadTree.create()
    tree.add(Thread(id="zelda", title="Zelda"))
    tree.active_id = "zelda"

    assert tree.remove("zelda")
    assert tree.active_id == "everything-else"
    assert tree.order == ["everything-else"]


def test_sort_puts_catch_all_then_pinned_then_recent():
    tree = ThreadTree.create()
    old = tree.add(Thread(id="old", title="Old"))
    new = tree.add(Thread(id="new", title="New"))
    pinned = tree.add(Thread(id="pinned", title="Pinned"))
    old.last_interaction_at = datetime(2026, 1, 1)
    new.last_interaction_at = datetime(2026, 1, 3)
    pinned.last_interaction_at = datetime(2025, 6, 1)
    pinned.pinned = True
    tree.catch_all.last_interaction_at = datetime(2024, 1, 1)

    tree.sort()

    assert tree.order == ["everything-else", "pinned", "new", "old"]


def test_remove_messages_returns_them_in_order():
    thread = Thread(id="t", title="T")
    first, second, third = Message.user("a"), Message.model("b"), Message.user("c")
    thread.messages.extend([first, second, third])

    removed = thread.remove_messages([third.id, first.id])

    assert removed == [first, third]
    assert thread.messages == [second]


def test_exchanges_pair_user_with_following_model():
    thread = Thread(id="t", title="T")
    notice = Message.model("limit", show_upgrade=True)
    user, reply = Message.user("q"), Message.model("a")
    thread.messages.extend([notice, user, reply])

    exchanges = thread.exchanges()

    assert len(exchanges) == 1
    assert exchanges[0].user is user and exchanges[0].model is reply


def test_tree_round_trips_through_dict():
    tree = ThreadTree.create()
    thread = tree.add(Thread(id="zelda", title="Zelda", topic_name="Zelda", category="Action"))
    thread.messages.append(Message.user("hi", images=["data:image/png;base64,AA=="]))
    thread.active_goal = ActiveGoal("Find the Master Sword")
    thread.panels["tips"] = InsightPanel(id="tips", title="Tips", status=PanelStatus.LOADED)
    thread.panel_order.append("tips")
    thread.touch()

    restored = ThreadTree.from_dict(json.loads(json.dumps(tree.to_dict())))

    copy = restored.get("zelda")
    assert copy.active_goal == ActiveGoal("Find the Master Sword")
    assert copy.messages[0].images == ["data:image/png;base64,AA=="]
    assert copy.panels["tips"].status is PanelStatus.LOADED
    assert copy.last_interaction_at == thread.last_interaction_at


def test_from_dict_repairs_order_but_not_catch_all():
    data = {
        "threads": {"zelda": {"id": "zelda", "title": "Zelda"}},
        "order": ["ghost"],
        "active_id": "ghost",
    }

    tree = ThreadTree.from_dict(data)

    assert tree.order == ["zelda"]
    assert tree.active_id == "everything-else"
    assert tree.get("everything-else") is None


def test_file_blob_store_round_trip(tmp_path):
    store = FileBlobStore(tmp_path / "data")

    assert store.get("conversations") is None
    store.set("conversations", b"one")
    store.set("conversations", b"two")

    assert store.get("conversations") == b"two"
    assert FileBlobStore(tmp_path / "data").get("conversations") == b"two"
    store.delete("conversations")
    store.delete("conversations")
    assert store.get("conversations") is None
    assert not list((tmp_path / "data").glob("*.tmp"))


def test_file_blob_store_sanitizes_keys(tmp_path):
    store = FileBlobStore(tmp_path)
    store.set("../escape/key", b"x")

    assert store.get("../escape/key") == b"x"
    assert not (tmp_path.parent / "escape").exists()


def test_memory_store_is_a_blob_store():
    assert isinstance(MemoryBlobStore(), BlobStore)


def test_schedule_without_loop_writes_immediately():
    store = MemoryBlobStore()
    debouncer = PersistenceDebouncer(store)
    tree = ThreadTree.create()

    debouncer(TreeEvent(kind="test", tree=tree))

    assert store.writes == 1
    assert not debouncer.is_dirty
    assert debouncer.load().order == tree.order


@pytest.mark.asyncio
async def test_rapid_mutations_coalesce_into_one_write():
    store = MemoryBlobStore()
    debouncer = PersistenceDebouncer(store, delay=0.05)
    tree = ThreadTree.create()

    for _ in range(10):
        tree.catch_all.messages.append(Message.user("x"))
        debouncer.schedule(tree)
        await asyncio.sleep(0.001)

    assert store.writes == 0
    await asyncio.sleep(0.15)

    assert store.writes == 1
    assert len(debouncer.load().catch_all.messages) == 10


@pytest.mark.asyncio
async def test_failed_write_stays_dirty_and_retries(caplog):
    store = FlakyStore()
    debouncer = PersistenceDebouncer(store, delay=0)
    tree = ThreadTree.create()

    with caplog.at_level(logging.ERROR, logger="tagwise.storage.thread_store"):
        debouncer.schedule(tree)
        await asyncio.sleep(0.01)

    assert debouncer.is_dirty
    assert "Failed to persist" in caplog.text

    store.failing = False
    assert debouncer.flush()
    assert not debouncer.is_dirty
    assert store.get("conversations") is not None


def test_large_tree_logs_warning(caplog):
    store = MemoryBlobStore()
    debouncer = PersistenceDebouncer(store, warning_bytes=100)
    tree = ThreadTree.create()
    tree.catch_all.messages.append(Message.user("x" * 500))

    with caplog.at_level(logging.WARNING, logger="tagwise.storage.thread_store"):
        debouncer.schedule(tree)

    assert "getting large" in caplog.text
    assert store.writes == 1


def test_load_returns_none_for_garbage():
    store = MemoryBlobStore()
    store.set("conversations", b"\xff\xfe not json")

    assert PersistenceDebouncer(store).load() is None


def test_panels_initialized_flag_round_trips():
    thread = Thread(id="zelda", title="Zelda", panels_initialized=True)

    copy = Thread.from_dict(json.loads(json.dumps(thread.to_dict())))

    assert copy.panels_initialized
    assert not Thread.from_dict({"id": "x"}).panels_initialized


def test_saves_without_flag_infer_it_from_panels():
    data = {
        "id": "zelda",
        "panels": {"tips": {"id": "tips", "title": "Tips"}},
        "panel_order": ["tips"],
    }

    assert Thread.from_dict(data).panels_initialized


@pytest.fixture
def teardown_hooks(monkeypatch):
    """Capture atexit and SIGTERM registrations instead of installing them."""
    hooks = {"atexit": [], "signal": {}, "previous": []}
    monkeypatch.setattr(thread_store.atexit, "register", hooks["atexit"].append)
    monkeypatch.setattr(
        thread_store.signal,
        "getsignal",
        lambda signum: lambda s, frame: hooks["previous"].append(s),
    )
    monkeypatch.setattr(
        thread_store.signal,
        "signal",
        lambda signum, handler: hooks["signal"].__setitem__(signum, handler),
    )
    return hooks


@pytest.mark.asyncio
async def test_sigterm_writes_pending_tree_immediately(teardown_hooks):
    store = MemoryBlobStore()
    debouncer = PersistenceDebouncer(store, delay=60)
    debouncer.register_teardown()
    debouncer.register_teardown()

    assert len(teardown_hooks["atexit"]) == 1
    assert list(teardown_hooks["signal"]) == [signal.SIGTERM]
    on_sigterm = teardown_hooks["signal"][signal.SIGTERM]

    tree = ThreadTree.create()
    tree.catch_all.messages.append(Message.user("remember me"))
    debouncer.schedule(tree)
    assert store.writes == 0

    on_sigterm(signal.SIGTERM, None)

    assert store.writes == 1
    assert not debouncer.is_dirty
    assert debouncer.load().catch_all.messages[0].text == "remember me"
    assert teardown_hooks["previous"] == [signal.SIGTERM]


@pytest.mark.asyncio
async def test_exit_hook_flushes_pending_tree(teardown_hooks):
    store = MemoryBlobStore()
    debouncer = PersistenceDebouncer(store, delay=60)
    debouncer.register_teardown()
    debouncer.schedule(ThreadTree.create())

    exit_hook = teardown_hooks["atexit"][0]

    assert exit_hook()
    assert store.writes == 1
    assert not exit_hook()
