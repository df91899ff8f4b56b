"""Insight panels attached to topic threads.

Each topic thread carries a set of named knowledge panels, created in bulk
from a per-category template the first time the thread's category is
known. A panel moves through

    loading -> streaming -> loaded
                        \\-> error

driven either by inline PANEL_UPDATE directives or by an on-demand fetch
against the provider.

The manager only mutates the Thread objects it is handed. The reconciler
owns the tree and decides when those mutations are published.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from .tags import PanelModifyRequest, PanelUpdate
from ..config.settings import settings
from ..llm.base_adapter import LLMAdapter, QuotaExceededError
from ..llm.dispatcher import CancellationToken
from ..storage import InsightPanel, PanelStatus, Thread, slugify

if TYPE_CHECKING:
    from .prompt_builder import PromptBuilder


LOGGER = logging.getLogger(__name__)

STORY_PANEL_ID = "story_so_far"


@dataclass(frozen=True)
class PanelTemplate:
    """Definition of one panel in a category template."""

    id: str
    title: str
    instruction: str
    web_search: bool = False


_STORY = PanelTemplate(
    id=STORY_PANEL_ID,
    title="Story So Far",
    instruction=(
        "Summarize what has happened up to the user's current progress. "
        "Do not reveal anything beyond that point."
    ),
)

PANEL_TEMPLATES: Dict[str, List[PanelTemplate]] = {
    "rpg": [
        _STORY,
        PanelTemplate(
            id="characters",
            title="Characters",
            instruction="Introduce the important characters met so far and their roles.",
        ),
        PanelTemplate(
            id="build_tips",
            title="Build Tips",
            instruction="Suggest character builds, skills and equipment suited to this stage.",
        ),
    ],
    "action": [
        _STORY,
        PanelTemplate(
            id="combat_tips",
            title="Combat Tips",
            instruction="Give practical combat advice for the current stage.",
        ),
        PanelTemplate(
            id="secrets",
            title="Secrets",
            instruction="Point out optional secrets nearby without spoiling the plot.",
        ),
    ],
    "strategy": [
        _STORY,
        PanelTemplate(
            id="strategies",
            title="Strategies",
            instruction="Describe strong openings and general strategies.",
        ),
        PanelTemplate(
            id="patch_notes",
            title="Latest Changes",
            instruction="Summarize the most recent balance changes and updates.",
            web_search=True,
        ),
    ],
    "default": [
        _STORY,
        PanelTemplate(
            id="tips",
            title="Tips",
            instruction="Offer helpful, spoiler-free tips for the user's current progress.",
        ),
        PanelTemplate(
            id="latest_news",
            title="Latest News",
            instruction="Summarize recent news and announcements about the topic.",
            web_search=True,
        ),
    ],
}


def templates_for(category: Optional[str]) -> List[PanelTemplate]:
    """Get the panel templates for a category (default set if unknown)."""
    key = (category or "").strip().lower()
    return PANEL_TEMPLATES.get(key, PANEL_TEMPLATES["default"])


def find_template(category: Optional[str], panel_id: str) -> Optional[PanelTemplate]:
    """Find the template behind a panel id, if it came from one."""
    for template in templates_for(category):
        if template.id == panel_id:
            return template
    return None


class ModifyOutcome(Enum):
    """Result of resolving a pending panel modification."""

    OVERWRITTEN = "overwritten"
    CREATED = "created"
    TITLE_TAKEN = "title_taken"
    MISSING = "missing"


@dataclass
class PendingModification:
    """A model-proposed panel change awaiting the user's choice."""

    thread_id: str
    request: PanelModifyRequest


class InsightManager:
    """Applies panel lifecycle transitions to threads."""

    def __init__(self, placeholder: Optional[str] = None) -> None:
        """Initialize the manager.

        Args:
            placeholder: Content shown while a panel is loading
        """
        self._placeholder = placeholder or settings.panel_placeholder

    @property
    def placeholder(self) -> str:
        """Content used for panels awaiting their first fill."""
        return self._placeholder

    def create_panels(self, thread: Thread) -> bool:
        """Create the template panels for a thread's category.

        Only happens once per thread: panels the user deleted are not
        recreated on later replies.

        Returns:
            True if panels were created
        """
        if thread.panels_initialized or not thread.category:
            return False
        thread.panels_initialized = True

        for template in templates_for(thread.category):
            thread.panels[template.id] = InsightPanel(
                id=template.id,
                title=template.title,
                content=self._placeholder,
                status=PanelStatus.LOADING,
            )
            thread.panel_order.append(template.id)

        LOGGER.debug("Created %d panels for %s", len(thread.panel_order), thread.id)
        return True

    def apply_update(self, thread: Thread, update: PanelUpdate) -> bool:
        """Append inline directive content to an existing panel.

        Returns:
            True if the panel exists and was updated
        """
        panel = thread.panels.get(update.panel_id)
        if panel is None:
            LOGGER.debug("Ignoring update for unknown panel %s", update.panel_id)
            return False

        existing = "" if panel.content == self._placeholder else panel.content
        separator = "\n\n" if existing else ""
        panel.content = existing + separator + update.content
        panel.status = PanelStatus.LOADED
        panel.is_unread = True
        return True

    def overwrite(self, thread: Thread, panel_id: str, title: str, content: str) -> bool:
        """Replace a panel's title and content.

        Returns:
            True if the panel exists
        """
        panel = thread.panels.get(panel_id)
        if panel is None:
            return False
        panel.title = title
        panel.content = content
        panel.status = PanelStatus.LOADED
        panel.is_unread = True
        return True

    def create_new(self, thread: Thread, title: str, content: str) -> Optional[str]:
        """Add a panel whose id is the slug of its title.

        Template ids use underscores, so existing ids and titles are
        compared in slug form.

        Returns:
            The new panel id, or None if a panel with that slug exists
        """
        panel_id = slugify(title)
        taken = set()
        for panel in thread.panels.values():
            taken.update((slugify(panel.id), slugify(panel.title)))
        if not panel_id or panel_id in taken:
            return None

        thread.panels[panel_id] = InsightPanel(
            id=panel_id,
            title=title,
            content=content,
            status=PanelStatus.LOADED,
            is_unread=True,
        )
        thread.panel_order.append(panel_id)
        return panel_id

    def resolve(
        self,
        thread: Thread,
        request: PanelModifyRequest,
        overwrite: bool,
    ) -> ModifyOutcome:
        """Carry out the user's choice for a pending modification."""
        if overwrite:
            if self.overwrite(thread, request.panel_id, request.title, request.content):
                return ModifyOutcome.OVERWRITTEN
            return ModifyOutcome.MISSING

        if self.create_new(thread, request.title, request.content) is None:
            return ModifyOutcome.TITLE_TAKEN
        return ModifyOutcome.CREATED

    def delete(self, thread: Thread, panel_id: str) -> bool:
        """Remove a panel from both the content map and the order list."""
        if panel_id not in thread.panels:
            return False
        del thread.panels[panel_id]
        thread.panel_order = [pid for pid in thread.panel_order if pid != panel_id]
        return True

    def mark_read(self, thread: Thread, panel_id: str) -> bool:
        """Clear the unread flag. Returns True if it was set."""
        panel = thread.panels.get(panel_id)
        if panel is None or not panel.is_unread:
            return False
        panel.is_unread = False
        return True

    def set_feedback(self, thread: Thread, panel_id: str, vote: Optional[str]) -> bool:
        """Record an up/down vote on a panel."""
        panel = thread.panels.get(panel_id)
        if panel is None:
            return False
        panel.feedback = vote
        return True

    def reorder(self, thread: Thread, source_index: int, dest_index: int) -> bool:
        """Move a panel within the display order."""
        order = thread.panel_order
        if not (0 <= source_index < len(order) and 0 <= dest_index < len(order)):
            return False
        order.insert(dest_index, order.pop(source_index))
        return True

    async def fetch(
        self,
        thread: Thread,
        panel_id: str,
        adapter: LLMAdapter,
        prompt_builder: "PromptBuilder",
        token: CancellationToken,
        on_change: Callable[[], None],
        on_quota_exceeded: Optional[Callable[[], None]] = None,
    ) -> bool:
        """Refresh one panel from the provider.

        Search-backed templates use a single completion; the rest stream
        into the panel. Errors are confined to this panel.

        Args:
            thread: Thread owning the panel
            panel_id: Panel to refresh
            adapter: LLM adapter to query
            prompt_builder: Builds the panel prompt
            token: Cancellation token for the fetch
            on_change: Called after every visible change to the panel
            on_quota_exceeded: Called if the provider reports a quota error

        Returns:
            True if the panel finished loading
        """
        panel = thread.panels.get(panel_id)
        template = find_template(thread.category, panel_id)
        if panel is None or template is None:
            return False

        panel.status = PanelStatus.STREAMING
        on_change()

        try:
            system, messages = prompt_builder.build_panel_prompt(thread, template)

            if template.web_search:
                content = await adapter.complete(messages, system)
                if token.cancelled:
                    return False
                panel.content = content
            else:
                parts: List[str] = []
                async for chunk in adapter.stream(messages, system):
                    if token.cancelled:
                        return False
                    if chunk.text:
                        parts.append(chunk.text)
                        panel.content = "".join(parts)
                        on_change()
                if token.cancelled:
                    return False

        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error("Error fetching panel %s for %s: %s", panel_id, thread.id, e)
            if isinstance(e, QuotaExceededError) and on_quota_exceeded is not None:
                on_quota_exceeded()
            panel.content = f"Error: {e}"
            panel.status = PanelStatus.ERROR
            on_change()
            return False

        panel.status = PanelStatus.LOADED
        panel.is_unread = True
        on_change()
        return True
