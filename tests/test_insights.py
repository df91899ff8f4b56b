"""Tests for insight panels."""

import pytest

from tagwise.llm.base_adapter import ProviderError, QuotaExceededError
from tagwise.llm.dispatcher import CancellationToken
from tagwise.orchestrator.insights import (
    InsightManager,
    ModifyOutcome,
    find_template,
    templates_for,
)
from tagwise.orchestrator.prompt_builder import PromptBuilder
from tagwise.orchestrator.tags import PanelModifyRequest, PanelUpdate
from tagwise.storage import PanelStatus, Thread
from tagwise.utils.token_counter import TokenCounter
from tests.helpers import FakeAdapter


@pytest.fixture
def manager() -> InsightManager:
    return InsightManager()


@pytest.fixture
def builder() -> PromptBuilder:
    return PromptBuilder(token_counter=TokenCounter("claude-haiku-4-5-20251001"))


@pytest.fixture
def rpg_thread(manager, topic_thread) -> Thread:
    manager.create_panels(topic_thread)
    return topic_thread


def test_templates_fall_back_to_default():
    assert [t.id for t in templates_for("rpg")] == ["story_so_far", "characters", "build_tips"]
    assert templates_for("RPG") == templates_for("rpg")
    assert templates_for("Cozy Farming") == templates_for("default")
    assert templates_for(None) == templates_for("default")
    assert find_template("Strategy", "patch_notes").web_search


def test_create_panels_once(manager, topic_thread):
    assert manager.create_panels(topic_thread)

    assert topic_thread.panel_order == ["story_so_far", "characters", "build_tips"]
    assert all(p.status is PanelStatus.LOADING for p in topic_thread.ordered_panels())
    assert all(p.content == "Loading..." for p in topic_thread.ordered_panels())

    topic_thread.category = "Strategy"
    assert not manager.create_panels(topic_thread)
    assert len(topic_thread.panels) == 3


def test_no_panels_without_category(manager):
    thread = Thread(id="x", title="X")

    assert not manager.create_panels(thread)
    assert thread.panels == {}


def test_update_replaces_placeholder_then_appends(manager, rpg_thread):
    assert manager.apply_update(rpg_thread, PanelUpdate("characters", "Mira the smith."))
    panel = rpg_thread.panels["characters"]
    assert panel.content == "Mira the smith."
    assert panel.status is PanelStatus.LOADED
    assert panel.is_unread

    manager.apply_update(rpg_thread, PanelUpdate("characters", "Oren the guard."))
    assert panel.content == "Mira the smith.\n\nOren the guard."


def test_update_for_unknown_panel_is_ignored(manager, rpg_thread):
    assert not manager.apply_update(rpg_thread, PanelUpdate("nope", "text"))


def test_delete_removes_from_map_and_order(manager, rpg_thread):
    assert manager.delete(rpg_thread, "characters")

    assert "characters" not in rpg_thread.panels
    assert rpg_thread.panel_order == ["story_so_far", "build_tips"]
    assert not manager.delete(rpg_thread, "characters")


def test_create_new_refuses_slug_collision(manager, rpg_thread):
    assert manager.create_new(rpg_thread, "Build Tips", "x") is None
    assert manager.create_new(rpg_thread, "Boss Guide", "Dodge.") == "boss-guide"
    assert rpg_thread.panel_order[-1] == "boss-guide"


def test_delete_then_create_same_slug_succeeds(manager, rpg_thread):
    manager.create_new(rpg_thread, "Boss Guide", "v1")
    manager.delete(rpg_thread, "boss-guide")

    request = PanelModifyRequest("characters", "Boss Guide", "v2")
    assert manager.resolve(rpg_thread, request, overwrite=False) is ModifyOutcome.CREATED
    assert rpg_thread.panels["boss-guide"].content == "v2"


def test_resolve_overwrite(manager, rpg_thread):
    request = PanelModifyRequest("characters", "Cast", "Everyone.")

    assert manager.resolve(rpg_thread, request, overwrite=True) is ModifyOutcome.OVERWRITTEN
    assert rpg_thread.panels["characters"].title == "Cast"

    missing = PanelModifyRequest("gone", "Gone", "x")
    assert manager.resolve(rpg_thread, missing, overwrite=True) is ModifyOutcome.MISSING


def test_mark_read_and_reorder(manager, rpg_thread):
    manager.apply_update(rpg_thread, PanelUpdate("build_tips", "Str build."))

    assert manager.mark_read(rpg_thread, "build_tips")
    assert not manager.mark_read(rpg_thread, "build_tips")

    assert manager.reorder(rpg_thread, 2, 0)
    assert rpg_thread.panel_order == ["build_tips", "story_so_far", "characters"]
    assert not manager.reorder(rpg_thread, 0, 5)


@pytest.mark.asyncio
async def test_streaming_fetch_walks_through_states(manager, rpg_thread, builder):
    adapter = FakeAdapter(["Mira ", "the smith."])
    seen = []

    ok = await manager.fetch(
        rpg_thread,
        "characters",
        adapter,
        builder,
        CancellationToken(),
        on_change=lambda: seen.append(rpg_thread.panels["characters"].status),
    )

    panel = rpg_thread.panels["characters"]
    assert ok
    assert panel.content == "Mira the smith."
    assert panel.status is PanelStatus.LOADED
    assert panel.is_unread
    assert seen[0] is PanelStatus.STREAMING
    assert seen[-1] is PanelStatus.LOADED
    assert "Shadow Realm" in adapter.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_search_fetch_uses_single_completion(manager, builder):
    thread = Thread(id="civ", title="Civ", topic_name="Civ", category="Strategy", progress=5)
    manager.create_panels(thread)
    adapter = FakeAdapter("Patch 1.2 nerfed archers.")

    assert await manager.fetch(thread, "patch_notes", adapter, builder, CancellationToken(), lambda: None)

    assert adapter.calls[0]["mode"] == "complete"
    assert thread.panels["patch_notes"].content == "Patch 1.2 nerfed archers."


@pytest.mark.asyncio
async def test_fetch_error_is_confined_to_panel(manager, rpg_thread, builder):
    adapter = FakeAdapter(error=ProviderError("boom"))

    ok = await manager.fetch(rpg_thread, "characters", adapter, builder, CancellationToken(), lambda: None)

    assert not ok
    assert rpg_thread.panels["characters"].status is PanelStatus.ERROR
    assert rpg_thread.panels["characters"].content == "Error: boom"
    assert rpg_thread.panels["build_tips"].status is PanelStatus.LOADING


@pytest.mark.asyncio
async def test_fetch_quota_error_reports_quota(manager, rpg_thread, builder):
    adapter = FakeAdapter(error=QuotaExceededError("slow down"))
    signalled = []

    await manager.fetch(
        rpg_thread, "characters", adapter, builder, CancellationToken(),
        lambda: None, on_quota_exceeded=lambda: signalled.append(True),
    )

    assert signalled == [True]


@pytest.mark.asyncio
async def test_cancelled_fetch_leaves_content(manager, rpg_thread, builder):
    token = CancellationToken()
    token.cancel()

    ok = await manager.fetch(rpg_thread, "characters", FakeAdapter(["x"]), builder, token, lambda: None)

    assert not ok
    assert rpg_thread.panels["characters"].content == "Loading..."


@pytest.mark.asyncio
async def test_fetch_unknown_panel(manager, rpg_thread, builder):
    ok = await manager.fetch(rpg_thread, "nope", FakeAdapter("x"), builder, CancellationToken(), lambda: None)

    assert not ok
