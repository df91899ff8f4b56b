"""Tests for prompt assembly."""

import pytest

from tagwise.orchestrator.insights import InsightManager, templates_for
from tagwise.orchestrator.prompt_builder import PromptBuilder
from tagwise.orchestrator.tags import PanelUpdate
from tagwise.storage import ActiveGoal, Message, ThreadTree
from tagwise.utils.token_counter import TokenCounter


@pytest.fixture
def builder() -> PromptBuilder:
    return PromptBuilder(token_counter=TokenCounter("claude-haiku-4-5-20251001"))


def test_catch_all_has_no_meta_context(builder):
    tree = ThreadTree.create()
    tree.catch_all.inventory = ["Potion"]

    assert builder.build_meta_context(tree.catch_all) == []
    assert builder.compose_user_message(tree.catch_all, "help") == "help"


def test_topic_meta_context_lines(builder, topic_thread):
    manager = InsightManager()
    manager.create_panels(topic_thread)
    manager.apply_update(topic_thread, PanelUpdate("story_so_far", "You fled the city."))
    topic_thread.active_goal = ActiveGoal("Reach the tower")
    topic_thread.inventory = ["Sword", "Rope"]

    lines = builder.build_meta_context(topic_thread)

    assert lines == [
        "[META_STORY_SO_FAR: You fled the city.]",
        '[META_ACTIVE_GOAL: {"description": "Reach the tower", "is_completed": false}]',
        "[META_INVENTORY: Sword, Rope]",
    ]
    composed = builder.compose_user_message(topic_thread, "what next?")
    assert composed.endswith("\n\nwhat next?")


def test_placeholder_story_and_finished_goal_are_not_injected(builder, topic_thread):
    InsightManager().create_panels(topic_thread)
    topic_thread.active_goal = ActiveGoal("Done already", is_completed=True)

    assert builder.build_meta_context(topic_thread) == []


def test_image_only_message_uses_default_prompt(builder):
    tree = ThreadTree.create()

    text = builder.compose_user_message(tree.catch_all, "  ", images=["data:image/png;base64,AA=="])

    assert text == PromptBuilder.IMAGE_ONLY_PROMPT


def test_history_skips_notices_and_excluded_turn(builder, tree_with_history):
    thread = tree_with_history.get("shadow-realm")
    thread.messages.append(Message.model("Upgrade now", show_upgrade=True))
    pending_user, pending_model = Message.user("new question"), Message.model()
    thread.messages.extend([pending_user, pending_model])

    history = builder.build_history(thread, exclude_ids=(pending_user.id, pending_model.id))

    assert history == [
        {"role": "user", "content": "Where is the blacksmith?"},
        {"role": "assistant", "content": "North of the bridge."},
    ]


def test_history_trimmed_oldest_first():
    builder = PromptBuilder(
        token_counter=TokenCounter("claude-haiku-4-5-20251001"),
        max_history_tokens=40,
    )
    tree = ThreadTree.create()
    thread = tree.catch_all
    for i in range(5):
        thread.messages.extend([Message.user(f"question {i} " + "x" * 40), Message.model(f"answer {i}")])

    history = builder.build_history(thread)

    assert history[0]["role"] == "user"
    assert history[-1]["content"] == "answer 4"
    assert len(history) < 10


def test_system_prompt_lists_panels_for_topic_threads(builder, topic_thread):
    InsightManager().create_panels(topic_thread)

    system = builder.get_system_prompt(topic_thread)

    assert "Shadow Realm" in system
    assert "40%" in system
    for template in templates_for("rpg"):
        assert template.id in system
    assert "[PANEL_UPDATE:" in system


def test_build_messages_appends_new_user_turn(builder, tree_with_history):
    thread = tree_with_history.get("shadow-realm")

    system, messages = builder.build_messages(thread, "any tips?")

    assert "[TOPIC_ID:" in system
    assert messages[-1] == {"role": "user", "content": "any tips?"}
    assert len(messages) == 3
