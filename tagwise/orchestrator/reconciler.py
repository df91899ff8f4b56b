"""Conversation reconciler.

The single writer of the thread tree. For every user send it:
1. Checks the quota gate
2. Appends the user message and an empty model placeholder to the
   source thread
3. Streams (or completes) the reply, re-deriving the placeholder's
   display text from the whole raw buffer on every delta
4. At the end, extracts the final directive set from the full buffer,
   decides the target thread, migrates the exchange if needed and
   applies the directives to the target

Every mutation is announced to subscribers as a TreeEvent; persistence is
one such subscriber.

Does NOT:
- Talk to the provider directly (the dispatcher's job)
- Write to storage (the persistence debouncer's job)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from .insights import InsightManager, ModifyOutcome, PendingModification
from .prompt_builder import PromptBuilder
from .quota import GateDecision, QuotaGate
from .tags import (
    Category,
    ExtractionResult,
    GoalComplete,
    GoalSet,
    InventorySnapshot,
    Milestone,
    PanelDeleteRequest,
    PanelModifyRequest,
    PanelUpdate,
    ProgressEstimate,
    SuggestedFollowUps,
    UnreleasedFlag,
    extract_directives,
)
from ..config.settings import settings
from ..llm.base_adapter import QuotaExceededError
from ..llm.dispatcher import CancellationToken, CompletionDispatcher
from ..storage import (
    ActiveGoal,
    Message,
    PanelStatus,
    Thread,
    ThreadTree,
    TreeEvent,
    slugify,
)


LOGGER = logging.getLogger(__name__)

UPGRADE_TEXT = "You've used all your free queries for this month. Upgrade to Pro for more."
RESTING_TEXT = (
    "The AI is currently resting due to high traffic. "
    "Service will resume in about an hour."
)
CANCELLED_TEXT = "*Request cancelled by user.*"
TITLE_TAKEN_TEXT = "An insight with a similar title already exists. Please choose a different title."

TreeListener = Callable[[TreeEvent], None]


class SendOutcome(Enum):
    """How a send_message call ended."""

    SENT = "sent"
    IGNORED = "ignored"
    LIMIT_REACHED = "limit_reached"
    COOLING_DOWN = "cooling_down"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class SendResult:
    """Result of a send_message call."""

    outcome: SendOutcome
    thread_id: Optional[str] = None
    user_message_id: Optional[str] = None
    model_message_id: Optional[str] = None
    migrated: bool = False

    @property
    def success(self) -> bool:
        """Whether the exchange completed."""
        return self.outcome is SendOutcome.SENT


@dataclass
class _Dispatch:
    """Bookkeeping for one in-flight send."""

    source_id: str
    user: Message
    model: Message
    token: CancellationToken
    raw: str = ""


class ConversationReconciler:
    """Owns the thread tree and applies model output to it."""

    def __init__(
        self,
        dispatcher: CompletionDispatcher,
        quota_gate: QuotaGate,
        insights: Optional[InsightManager] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        tree: Optional[ThreadTree] = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            dispatcher: Completion dispatcher for provider calls
            quota_gate: Shared quota and cooldown gate
            insights: Panel manager, or None for a default one
            prompt_builder: Prompt builder, or None for a default one
            tree: Initial thread tree, or None for a fresh one
        """
        self._dispatcher = dispatcher
        self._gate = quota_gate
        self._insights = insights or InsightManager()
        self._prompts = prompt_builder or PromptBuilder()
        self._tree = tree or ThreadTree.create()
        self._tree.ensure_catch_all()

        self._listeners: List[TreeListener] = []
        self._inflight: Dict[str, _Dispatch] = {}
        self._pending: Dict[str, PendingModification] = {}
        self._panel_tokens: Dict[Tuple[str, str], CancellationToken] = {}
        self._panel_tasks: Set[asyncio.Task] = set()

    # ==================== Accessors ====================

    @property
    def tree(self) -> ThreadTree:
        """Get the thread tree (read-only by convention)."""
        return self._tree

    @property
    def insights(self) -> InsightManager:
        """Get the panel manager."""
        return self._insights

    @property
    def dispatcher(self) -> CompletionDispatcher:
        """Get the completion dispatcher."""
        return self._dispatcher

    @property
    def quota_gate(self) -> QuotaGate:
        """Get the quota gate."""
        return self._gate

    def is_loading(self, message_id: Optional[str] = None) -> bool:
        """Check whether a message (or any message) is still in flight."""
        if message_id is None:
            return bool(self._inflight)
        return message_id in self._inflight

    def pending_modification(self, thread_id: str) -> Optional[PendingModification]:
        """Get the panel modification awaiting the user's choice, if any."""
        return self._pending.get(thread_id)

    # ==================== Events ====================

    def subscribe(self, listener: TreeListener) -> Callable[[], None]:
        """Register a tree-change listener.

        Returns:
            Callable that unsubscribes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, thread_id: Optional[str] = None) -> None:
        event = TreeEvent(kind=kind, tree=self._tree, thread_id=thread_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Tree listener failed on %s event", kind)

    def _commit(self, kind: str, thread: Thread, touch: bool = True) -> None:
        """Publish a mutation of one thread, re-sorting if it was touched."""
        if touch:
            thread.touch()
            self._tree.sort()
        self._emit(kind, thread.id)

    # ==================== Sending ====================

    async def send_message(
        self,
        text: str,
        images: Optional[List[str]] = None,
        from_companion: bool = False,
        thread_id: Optional[str] = None,
    ) -> SendResult:
        """Send a user message and reconcile the reply into the tree.

        Never raises for provider failures: they end up as text in the
        placeholder message.

        Args:
            text: User text (may be empty when images are attached)
            images: Image data URLs
            from_companion: True if the message came from a companion device
            thread_id: Source thread, defaults to the active thread

        Returns:
            SendResult describing the outcome
        """
        text = text or ""
        images = list(images or [])
        text_queries = 1 if text.strip() else 0
        image_queries = len(images)
        if not text_queries and not image_queries:
            return SendResult(SendOutcome.IGNORED)

        source = self._tree.get(thread_id) if thread_id else self._tree.active
        if source is None:
            LOGGER.warning("Send to unknown thread %s ignored", thread_id)
            return SendResult(SendOutcome.IGNORED)

        decision = self._gate.check(text_queries, image_queries)
        if decision is GateDecision.COOLING_DOWN:
            source.messages.append(Message.model(RESTING_TEXT, notice=True))
            self._commit("notice", source)
            return SendResult(SendOutcome.COOLING_DOWN, thread_id=source.id)
        if decision is GateDecision.LIMIT_REACHED:
            source.messages.append(Message.model(UPGRADE_TEXT, show_upgrade=True))
            self._commit("notice", source)
            return SendResult(SendOutcome.LIMIT_REACHED, thread_id=source.id)

        user = Message.user(text, images, from_companion)
        placeholder = Message.model()
        source.messages.extend([user, placeholder])
        dispatch = _Dispatch(
            source_id=source.id,
            user=user,
            model=placeholder,
            token=CancellationToken(),
        )
        self._inflight[placeholder.id] = dispatch
        self._commit("message_added", source)

        self._gate.record(text_queries, image_queries)

        try:
            system, messages = self._prompts.build_messages(
                source, text, images, exclude_ids=(user.id, placeholder.id)
            )
            if self._gate.tier.is_premium:
                dispatch.raw = await self._dispatcher.complete(
                    source.id, messages, system, dispatch.token, images
                )
            else:
                dispatch.raw = await self._dispatcher.stream(
                    source.id,
                    messages,
                    system,
                    dispatch.token,
                    lambda delta: self._on_delta(dispatch, delta),
                    images,
                )
        except QuotaExceededError as e:
            # Arms the cooldown even for a cancelled dispatch
            LOGGER.warning("Provider quota exceeded: %s", e)
            self._gate.provider_quota_exceeded()
            return self._fail(dispatch, f"Error: {RESTING_TEXT}")
        except asyncio.CancelledError:
            self.cancel(placeholder.id)
            raise
        except Exception as e:
            if not dispatch.token.cancelled:
                LOGGER.error("Dispatch failed for %s: %s", source.id, e)
            return self._fail(dispatch, f"Error: {e}")

        if dispatch.token.cancelled:
            return self._cancelled(dispatch)

        return self._finalize(dispatch)

    def _on_delta(self, dispatch: _Dispatch, delta: str) -> None:
        if dispatch.token.cancelled:
            return
        dispatch.raw += delta
        dispatch.model.text = extract_directives(dispatch.raw).display_text
        self._emit("stream", dispatch.source_id)

    def _cancelled(self, dispatch: _Dispatch) -> SendResult:
        return SendResult(
            SendOutcome.CANCELLED,
            thread_id=dispatch.source_id,
            user_message_id=dispatch.user.id,
            model_message_id=dispatch.model.id,
        )

    def _fail(self, dispatch: _Dispatch, text: str) -> SendResult:
        """End a dispatch with an error notice, unless the user cancelled it."""
        if dispatch.token.cancelled:
            LOGGER.debug("Ignoring failure of cancelled dispatch %s", dispatch.model.id)
            return self._cancelled(dispatch)
        self._inflight.pop(dispatch.model.id, None)
        dispatch.model.text = text
        dispatch.model.notice = True
        source = self._tree.get(dispatch.source_id)
        if source is not None:
            self._commit("error", source)
        return SendResult(
            SendOutcome.ERROR,
            thread_id=dispatch.source_id,
            user_message_id=dispatch.user.id,
            model_message_id=dispatch.model.id,
        )

    def cancel(self, message_id: str) -> bool:
        """Cancel an in-flight dispatch by its placeholder message id.

        The placeholder keeps its place and shows the cancellation notice.
        No directive from the partial reply is applied.

        Returns:
            True if a dispatch was cancelled
        """
        dispatch = self._inflight.pop(message_id, None)
        if dispatch is None:
            return False

        dispatch.token.cancel()
        dispatch.model.text = CANCELLED_TEXT
        dispatch.model.notice = True
        dispatch.model.suggestions = []
        source = self._tree.get(dispatch.source_id)
        if source is not None:
            self._commit("cancelled", source, touch=False)
        LOGGER.debug("Dispatch %s cancelled", message_id)
        return True

    # ==================== Finalization ====================

    def _finalize(self, dispatch: _Dispatch) -> SendResult:
        """Apply the complete reply to the tree in one step."""
        self._inflight.pop(dispatch.model.id, None)
        source = self._tree.get(dispatch.source_id)
        if source is None:
            LOGGER.warning("Source thread %s vanished before finalization", dispatch.source_id)
            return SendResult(SendOutcome.CANCELLED, thread_id=dispatch.source_id)

        result = extract_directives(dispatch.raw, final=True)
        dispatch.model.text = result.display_text

        target = self._resolve_target(source, result, bool(dispatch.user.images))
        migrated = target is not source
        if migrated:
            self._migrate(source, target, dispatch)

        unreleased = self._apply_directives(target, dispatch, result)

        self._tree.active_id = target.id
        self._commit("finalized", target)

        if (
            self._gate.tier.is_premium
            and target.topic_name
            and target.category
            and target.progress is not None
            and not unreleased
        ):
            self._schedule_panel_fill(target)

        return SendResult(
            SendOutcome.SENT,
            thread_id=target.id,
            user_message_id=dispatch.user.id,
            model_message_id=dispatch.model.id,
            migrated=migrated,
        )

    def _resolve_target(
        self,
        source: Thread,
        result: ExtractionResult,
        has_images: bool,
    ) -> Thread:
        """Pick the thread the finished exchange belongs to."""
        topic = result.topic
        if topic is None or not topic.is_confident(has_images):
            return source

        topic_id = slugify(topic.name)
        if not topic_id or topic_id == source.id:
            return source
        if topic_id == self._tree.catch_all.id:
            return source

        target = self._tree.get(topic_id)
        if target is None:
            target = self._tree.add(Thread(id=topic_id, title=topic.name))
            LOGGER.info("Created topic thread %s", topic_id)
        if not target.topic_name:
            target.topic_name = topic.name
        return target

    def _migrate(self, source: Thread, target: Thread, dispatch: _Dispatch) -> None:
        """Move the exchange from source to target, append-only."""
        moved = source.remove_messages([dispatch.user.id, dispatch.model.id])
        target.messages.extend(moved)
        if self._dispatcher.has_session(source.id):
            self._dispatcher.rename_session(source.id, target.id)
        LOGGER.info("Migrated exchange %s from %s to %s", dispatch.model.id, source.id, target.id)

    def _apply_directives(
        self,
        target: Thread,
        dispatch: _Dispatch,
        result: ExtractionResult,
    ) -> bool:
        """Apply every directive of a finished reply to the target thread.

        Topic state (category, progress) is never written to the
        catch-all thread, and progress is ignored when the topic was
        identified without enough confidence.

        Returns:
            True if the reply flagged the topic as unreleased
        """
        message = dispatch.model
        topic = result.topic
        topic_state = not target.is_catch_all
        trust_progress = topic_state and (
            topic is None or topic.is_confident(bool(dispatch.user.images))
        )
        # A directive repeated within one reply applies once
        fresh = list(dict.fromkeys(result.directives))
        unreleased = False

        for directive in fresh:
            if isinstance(directive, ProgressEstimate):
                if trust_progress:
                    target.progress = directive.value
            elif isinstance(directive, Category):
                if topic_state:
                    target.category = directive.name
            elif isinstance(directive, InventorySnapshot):
                target.inventory = list(directive.items)
            elif isinstance(directive, UnreleasedFlag):
                unreleased = True
                target.last_trailer_at = datetime.now()
            elif isinstance(directive, GoalSet):
                target.active_goal = ActiveGoal(description=directive.description)
            elif isinstance(directive, GoalComplete):
                if target.active_goal is not None:
                    target.active_goal.is_completed = True
            elif isinstance(directive, Milestone):
                message.milestone = {"type": directive.type, "name": directive.name}
            elif isinstance(directive, SuggestedFollowUps):
                message.suggestions = list(directive.items)

        # Panel directives need the panels created from this reply's category
        if topic_state and target.category:
            self._insights.create_panels(target)

        for directive in fresh:
            if isinstance(directive, PanelUpdate):
                self._insights.apply_update(target, directive)
            elif isinstance(directive, PanelDeleteRequest):
                self._insights.delete(target, directive.panel_id)
            elif isinstance(directive, PanelModifyRequest):
                self._pending[target.id] = PendingModification(target.id, directive)

        return unreleased

    # ==================== Panels ====================

    def _schedule_panel_fill(self, thread: Thread) -> None:
        for panel in thread.ordered_panels():
            if panel.status is PanelStatus.LOADING:
                task = asyncio.ensure_future(self.fetch_panel(thread.id, panel.id))
                self._panel_tasks.add(task)
                task.add_done_callback(self._panel_tasks.discard)

    async def wait_for_panels(self) -> None:
        """Wait for every background panel fetch to finish."""
        while self._panel_tasks:
            await asyncio.gather(*list(self._panel_tasks), return_exceptions=True)

    async def fetch_panel(self, thread_id: str, panel_id: str) -> bool:
        """Refresh one panel from the provider.

        Skipped while the provider cooldown is active.

        Returns:
            True if the panel finished loading
        """
        thread = self._tree.get(thread_id)
        if thread is None or not thread.category or panel_id not in thread.panels:
            return False
        if self._gate.cooldown.is_active:
            LOGGER.debug("Panel fetch for %s/%s skipped during cooldown", thread_id, panel_id)
            return False

        key = (thread_id, panel_id)
        previous = self._panel_tokens.get(key)
        if previous is not None:
            previous.cancel()
        token = CancellationToken()
        self._panel_tokens[key] = token

        try:
            return await self._insights.fetch(
                thread,
                panel_id,
                self._dispatcher.adapter,
                self._prompts,
                token,
                on_change=lambda: self._emit("panel", thread_id),
                on_quota_exceeded=self._gate.provider_quota_exceeded,
            )
        finally:
            if self._panel_tokens.get(key) is token:
                del self._panel_tokens[key]

    def resolve_pending_modification(self, thread_id: str, overwrite: bool) -> ModifyOutcome:
        """Carry out the user's choice for a pending panel modification.

        A create-new choice whose title collides with an existing panel is
        refused with a visible notice, and the request stays pending.
        """
        pending = self._pending.get(thread_id)
        thread = self._tree.get(thread_id)
        if pending is None or thread is None:
            return ModifyOutcome.MISSING

        outcome = self._insights.resolve(thread, pending.request, overwrite)
        if outcome is ModifyOutcome.TITLE_TAKEN:
            thread.messages.append(Message.model(TITLE_TAKEN_TEXT, notice=True))
            self._commit("notice", thread)
            return outcome

        del self._pending[thread_id]
        self._commit("panel", thread)
        return outcome

    def dismiss_pending_modification(self, thread_id: str) -> bool:
        """Discard a pending modification without applying it."""
        return self._pending.pop(thread_id, None) is not None

    def mark_panel_read(self, thread_id: str, panel_id: str) -> bool:
        """Clear a panel's unread flag without bumping the thread's recency."""
        thread = self._tree.get(thread_id)
        if thread is None or not self._insights.mark_read(thread, panel_id):
            return False
        self._commit("panel", thread, touch=False)
        return True

    def set_panel_feedback(self, thread_id: str, panel_id: str, vote: Optional[str]) -> bool:
        """Record an up/down vote on a panel."""
        thread = self._tree.get(thread_id)
        if thread is None or not self._insights.set_feedback(thread, panel_id, vote):
            return False
        self._commit("panel", thread)
        return True

    def delete_panel(self, thread_id: str, panel_id: str) -> bool:
        """Remove a panel."""
        thread = self._tree.get(thread_id)
        if thread is None or not self._insights.delete(thread, panel_id):
            return False
        token = self._panel_tokens.pop((thread_id, panel_id), None)
        if token is not None:
            token.cancel()
        self._commit("panel", thread)
        return True

    def reorder_panels(self, thread_id: str, source_index: int, dest_index: int) -> bool:
        """Move a panel within its thread's display order."""
        thread = self._tree.get(thread_id)
        if thread is None or not self._insights.reorder(thread, source_index, dest_index):
            return False
        self._commit("panel", thread)
        return True

    # ==================== Thread management ====================

    def switch_thread(self, thread_id: str) -> bool:
        """Make a thread the active one."""
        if thread_id not in self._tree.threads:
            return False
        self._tree.active_id = thread_id
        self._emit("switched", thread_id)
        return True

    def pin_thread(self, thread_id: str, pinned: bool) -> bool:
        """Pin or unpin a thread."""
        thread = self._tree.get(thread_id)
        if thread is None:
            return False
        thread.pinned = pinned
        self._commit("pinned", thread)
        return True

    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread. The catch-all thread cannot be deleted."""
        thread = self._tree.get(thread_id)
        if thread is None or not self._tree.remove(thread_id):
            return False

        for message in thread.messages:
            if message.id in self._inflight:
                self.cancel(message.id)
        for key in [k for k in self._panel_tokens if k[0] == thread_id]:
            self._panel_tokens.pop(key).cancel()
        self._pending.pop(thread_id, None)
        self._dispatcher.end_session(thread_id)

        self._emit("deleted", thread_id)
        return True

    def reorder_threads(self, source_index: int, dest_index: int) -> bool:
        """Manually move a thread within the display order.

        The order holds until the next mutation re-sorts the tree.
        """
        order = self._tree.order
        if not (0 <= source_index < len(order) and 0 <= dest_index < len(order)):
            return False
        order.insert(dest_index, order.pop(source_index))
        self._emit("reordered")
        return True

    def set_message_feedback(self, message_id: str, vote: Optional[str]) -> bool:
        """Record an up/down vote on a model message."""
        found = self._tree.find_message(message_id)
        if found is None:
            return False
        thread, message = found
        message.feedback = vote
        self._commit("feedback", thread, touch=False)
        return True

    def _abandon_inflight(self) -> None:
        for dispatch in list(self._inflight.values()):
            dispatch.token.cancel()
        self._inflight.clear()
        for token in self._panel_tokens.values():
            token.cancel()
        self._panel_tokens.clear()
        self._pending.clear()
        self._dispatcher.reset()

    def reset(self) -> None:
        """Drop every thread and cancel all in-flight work."""
        self._abandon_inflight()
        self._tree = ThreadTree.create()
        self._emit("reset")

    def restore(self, tree: Optional[ThreadTree]) -> None:
        """Replace the tree with a saved one.

        Falls back to reset() when the saved tree lacks the catch-all
        thread. The catch-all becomes the active thread.
        """
        if tree is None or tree.get(settings.catch_all_thread_id) is None:
            self.reset()
            return

        self._abandon_inflight()
        self._tree = tree
        self._tree.active_id = settings.catch_all_thread_id
        self._tree.sort()
        self._emit("restored")
