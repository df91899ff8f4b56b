"""Completion dispatcher.

Sends composed prompts to an LLM adapter on behalf of a thread, either as
a delta stream or a single completion, and tracks one session handle per
thread id.

Does NOT:
- Parse directives or touch thread state (the reconciler's job)
- Decide whether a dispatch is allowed (the quota gate's job)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .base_adapter import LLMAdapter
from ..config.models import get_model
from ..config.settings import settings


LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag for one dispatch.

    Cancelling stops further delta callbacks for the dispatch. It does not
    stop the provider from generating server-side.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run a callback on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def cancel(self) -> None:
        """Trigger cancellation. Repeated calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback failed")


@dataclass
class ChatSession:
    """Ancillary provider session handle for one thread."""

    thread_id: str
    model_id: str
    started_at: datetime = field(default_factory=datetime.now)
    turns: int = 0


class CompletionDispatcher:
    """Dispatches prompts to the provider and owns per-thread sessions.

    Sessions are keyed by thread id. When an exchange migrates to another
    thread the session is re-keyed with rename_session() so that the next
    dispatch for the target thread reuses it.
    """

    def __init__(
        self,
        adapter: LLMAdapter,
        max_tokens: Optional[int] = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            adapter: The LLM adapter to send prompts to
            max_tokens: Output token cap, defaults to settings
        """
        self._adapter = adapter
        self._max_tokens = max_tokens or settings.max_output_tokens
        self._sessions: Dict[str, ChatSession] = {}

    @property
    def adapter(self) -> LLMAdapter:
        """Get the underlying adapter."""
        return self._adapter

    def session(self, thread_id: str) -> Optional[ChatSession]:
        """Get the session for a thread, if one is open."""
        return self._sessions.get(thread_id)

    def has_session(self, thread_id: str) -> bool:
        """Check whether a thread has an open session."""
        return thread_id in self._sessions

    def rename_session(self, source_id: str, target_id: str) -> bool:
        """Re-key a session from one thread id to another.

        If the target already has a session it is kept and the source
        session is dropped, so a thread never holds two handles.

        Args:
            source_id: Current thread id of the session
            target_id: New thread id

        Returns:
            True if a session was moved or merged
        """
        session = self._sessions.pop(source_id, None)
        if session is None:
            return False

        existing = self._sessions.get(target_id)
        if existing is not None:
            existing.turns += session.turns
        else:
            session.thread_id = target_id
            self._sessions[target_id] = session

        LOGGER.debug("Session re-keyed %s -> %s", source_id, target_id)
        return True

    def end_session(self, thread_id: str) -> None:
        """Free the session handle for a thread."""
        if self._sessions.pop(thread_id, None) is not None:
            LOGGER.debug("Session for %s released", thread_id)

    def reset(self) -> None:
        """Drop every session handle."""
        self._sessions.clear()

    def _open_session(self, thread_id: str, token: CancellationToken) -> ChatSession:
        session = self._sessions.get(thread_id)
        if session is None:
            session = ChatSession(thread_id=thread_id, model_id=self._adapter.model_id)
            self._sessions[thread_id] = session
        token.add_callback(lambda: self.end_session(thread_id))
        return session

    def _usable_images(self, images: Optional[List[str]]) -> Optional[List[str]]:
        """Drop attachments the configured model cannot read."""
        if not images:
            return None
        model = get_model(self._adapter.model_id)
        if model is not None and not model.supports_images:
            LOGGER.warning(
                "%s does not accept images; sending %d attachment(s) as text only",
                model.display_name,
                len(images),
            )
            return None
        return images

    async def stream(
        self,
        thread_id: str,
        messages: List[Dict[str, Any]],
        system: str,
        token: CancellationToken,
        on_delta: Callable[[str], None],
        images: Optional[List[str]] = None,
    ) -> str:
        """Stream a completion, invoking on_delta for each text delta.

        Args:
            thread_id: Thread the dispatch belongs to
            messages: Prior exchanges plus the new user message
            system: System instructions
            token: Cancellation token for this dispatch
            on_delta: Callback receiving each text delta
            images: Data URLs attached to the new message

        Returns:
            The accumulated raw text (partial if cancelled)

        Raises:
            QuotaExceededError: If the provider reports a quota condition
            ProviderError: For any other provider failure
        """
        session = self._open_session(thread_id, token)
        parts: List[str] = []

        async for chunk in self._adapter.stream(
            messages, system, self._max_tokens, self._usable_images(images)
        ):
            if token.cancelled:
                break
            if chunk.text:
                parts.append(chunk.text)
                on_delta(chunk.text)
        else:
            session.turns += 1

        return "".join(parts)

    async def complete(
        self,
        thread_id: str,
        messages: List[Dict[str, Any]],
        system: str,
        token: CancellationToken,
        images: Optional[List[str]] = None,
    ) -> str:
        """Get a single completion.

        Args:
            thread_id: Thread the dispatch belongs to
            messages: Prior exchanges plus the new user message
            system: System instructions
            token: Cancellation token for this dispatch
            images: Data URLs attached to the new message

        Returns:
            The full response text, or an empty string if cancelled

        Raises:
            QuotaExceededError: If the provider reports a quota condition
            ProviderError: For any other provider failure
        """
        session = self._open_session(thread_id, token)
        text = await self._adapter.complete(
            messages, system, self._max_tokens, self._usable_images(images)
        )
        if token.cancelled:
            return ""
        session.turns += 1
        return text
