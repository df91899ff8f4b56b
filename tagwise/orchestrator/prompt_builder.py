"""Prompt builder for assembling LLM prompts.

This module assembles the final prompt for a thread from its stored state.
It does NOT call LLMs or mutate threads - it only builds prompts.

Prompt assembly order:
1. SYSTEM PROMPT (persona for the thread + directive definitions)
2. CONVERSATION HISTORY (completed exchanges, trimmed to the token budget)
3. META CONTEXT (hidden prefix lines: story so far, active goal, inventory)
4. CURRENT USER MESSAGE
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .insights import STORY_PANEL_ID, PanelTemplate
from ..config.settings import settings
from ..storage import Thread
from ..utils.token_counter import TokenCounter


DIRECTIVE_DEFINITIONS = """\
Control tags. Emit them inline, anywhere in your reply; they are hidden from the user.
- [TOPIC_ID: <name>] the game or topic the user is asking about
- [CONFIDENCE: high|low] how sure you are of TOPIC_ID
- [CATEGORY: <name>] the topic's genre, e.g. RPG, Action, Strategy
- [PROGRESS: <0-100>] how far through the topic the user appears to be
- [UNRELEASED: true] the topic has not been released yet
- [MILESTONE: {"type": "...", "name": "..."}] a notable achievement
- [INVENTORY: {"items": ["...", "..."]}] the user's full current inventory
- [PANEL_UPDATE: {"id": "<panel id>", "content": "..."}] add to an insight panel
- [PANEL_MODIFY_PENDING: {"id": "<panel id>", "title": "...", "content": "..."}] propose rewriting a panel
- [PANEL_DELETE_REQUEST: {"id": "<panel id>"}] propose removing a panel
- [GOAL_SET: {"description": "..."}] the user's current objective
- [GOAL_COMPLETE: true] the current objective is done
- [SUGGESTIONS: ["...", "...", "..."]] up to three short follow-up questions"""


class PromptBuilder:
    """Builds prompts for LLM calls from thread state.

    Does NOT:
    - Call LLMs
    - Mutate threads or panels
    - Decide which thread a reply belongs to
    """

    DEFAULT_SYSTEM_PROMPT = (
        "You are a friendly, spoiler-aware gaming companion. Help with any "
        "question. When the user talks about a specific game, identify it with "
        "TOPIC_ID and CONFIDENCE, and include CATEGORY and PROGRESS once known."
    )

    TOPIC_SYSTEM_PROMPT = (
        "You are a spoiler-aware companion for {topic}. The user is roughly "
        "{progress} through it. Never reveal story details beyond that point "
        "unless asked."
    )

    IMAGE_ONLY_PROMPT = (
        "Identify what is shown in this screenshot and tell me something "
        "useful about where I am."
    )

    def __init__(
        self,
        system_prompt: Optional[str] = None,
        token_counter: Optional[TokenCounter] = None,
        max_history_tokens: Optional[int] = None,
    ) -> None:
        """Initialize the prompt builder.

        Args:
            system_prompt: Custom base system prompt, or None for default
            token_counter: Counter used to trim history, defaults to one
                for the configured default model
            max_history_tokens: History budget, defaults to settings
        """
        self._base_system_prompt = system_prompt or self.DEFAULT_SYSTEM_PROMPT
        self._counter = token_counter or TokenCounter(settings.default_model)
        self._max_history_tokens = max_history_tokens or settings.max_history_tokens

    def get_system_prompt(self, thread: Thread) -> str:
        """Build the system prompt for a thread.

        The catch-all thread gets the general persona. Topic threads get
        the topic persona plus the ids of their panels so that panel
        directives can reference them.
        """
        if thread.is_catch_all or not thread.topic_name:
            return f"{self._base_system_prompt}\n\n{DIRECTIVE_DEFINITIONS}"

        progress = f"{thread.progress}%" if thread.progress is not None else "an unknown amount"
        parts = [self.TOPIC_SYSTEM_PROMPT.format(topic=thread.topic_name, progress=progress)]
        if thread.category:
            parts.append(f"Category: {thread.category}.")
        if thread.panel_order:
            parts.append("Insight panels: " + ", ".join(thread.panel_order) + ".")
        parts.append(DIRECTIVE_DEFINITIONS)
        return "\n\n".join(parts)

    def build_meta_context(self, thread: Thread) -> List[str]:
        """Build hidden meta-context lines for a topic thread.

        Returns:
            Lines of the form ``[META_NAME: value]``; empty for the
            catch-all thread
        """
        if thread.is_catch_all:
            return []

        lines = []
        story = thread.panels.get(STORY_PANEL_ID)
        if story and story.content and story.content != settings.panel_placeholder:
            lines.append(f"[META_STORY_SO_FAR: {story.content}]")

        if thread.active_goal and not thread.active_goal.is_completed:
            goal = {"description": thread.active_goal.description, "is_completed": False}
            lines.append(f"[META_ACTIVE_GOAL: {json.dumps(goal)}]")

        if thread.inventory:
            lines.append(f"[META_INVENTORY: {', '.join(thread.inventory)}]")

        return lines

    def compose_user_message(
        self,
        thread: Thread,
        text: str,
        images: Optional[List[str]] = None,
    ) -> str:
        """Compose the provider-facing text of a new user message."""
        body = text.strip()
        if not body and images:
            body = self.IMAGE_ONLY_PROMPT

        meta = self.build_meta_context(thread)
        if meta:
            return "\n".join(meta) + "\n\n" + body
        return body

    def build_history(
        self,
        thread: Thread,
        exclude_ids: Iterable[str] = (),
    ) -> List[Dict[str, str]]:
        """Convert a thread's completed exchanges to API format.

        Notices (upgrade, cooldown, cancellation, errors) and empty
        replies are skipped, and the oldest exchanges are dropped once
        the history exceeds the token budget.

        Args:
            thread: Thread whose exchanges to include
            exclude_ids: Message ids to leave out, e.g. the pending turn

        Returns:
            List of message dicts, oldest first
        """
        excluded = set(exclude_ids)
        history: List[Dict[str, str]] = []
        for exchange in thread.exchanges():
            if exchange.user.id in excluded or exchange.model.id in excluded:
                continue
            if exchange.model.notice or not exchange.model.text:
                continue
            user_text = exchange.user.text or self.IMAGE_ONLY_PROMPT
            history.append({"role": "user", "content": user_text})
            history.append({"role": "assistant", "content": exchange.model.text})

        return self._counter.trim_to_budget(history, self._max_history_tokens)

    def build_messages(
        self,
        thread: Thread,
        text: str,
        images: Optional[List[str]] = None,
        exclude_ids: Iterable[str] = (),
    ) -> Tuple[str, List[Dict[str, Any]]]:
        """Build the complete prompt for a new user message.

        Args:
            thread: Thread the message is sent from
            text: User text
            images: Attached image data URLs
            exclude_ids: Message ids of the turn being dispatched

        Returns:
            Tuple of (system prompt, messages list)
        """
        messages: List[Dict[str, Any]] = self.build_history(thread, exclude_ids)
        messages.append({
            "role": "user",
            "content": self.compose_user_message(thread, text, images),
        })
        return self.get_system_prompt(thread), messages

    def build_panel_prompt(
        self,
        thread: Thread,
        template: PanelTemplate,
    ) -> Tuple[str, List[Dict[str, Any]]]:
        """Build the prompt for an on-demand panel fetch.

        Returns:
            Tuple of (system prompt, messages list)
        """
        topic = thread.topic_name or thread.title
        progress = f"{thread.progress}%" if thread.progress is not None else "unknown"
        system = (
            f"You write the \"{template.title}\" panel of a companion app for {topic}. "
            "Reply with the panel content only, in Markdown, without control tags."
        )
        request = (
            f"Topic: {topic}\n"
            f"Category: {thread.category or 'unknown'}\n"
            f"Progress: {progress}\n\n"
            f"{template.instruction}"
        )
        return system, [{"role": "user", "content": request}]
