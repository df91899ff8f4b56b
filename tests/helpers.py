"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

from tagwise.llm.base_adapter import LLMAdapter, StreamChunk
from tagwise.llm.dispatcher import CompletionDispatcher
from tagwise.orchestrator.prompt_builder import PromptBuilder
from tagwise.orchestrator.quota import BlobUsageStore, CooldownState, QuotaGate, Tier
from tagwise.orchestrator.reconciler import ConversationReconciler
from tagwise.storage.blob_store import MemoryBlobStore
from tagwise.utils.token_counter import TokenCounter

Script = Union[str, Sequence[str]]

PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


class FakeAdapter(LLMAdapter):
    """Scripted adapter.

    Each call consumes the next script; the last one is reused once the
    queue runs dry. A stream script is a list of chunks, a completion
    script is a string (lists are joined).
    """

    def __init__(self, *scripts: Script, error: Optional[Exception] = None) -> None:
        self._scripts: List[Script] = list(scripts)
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self._release: Optional[asyncio.Event] = None
        self.paused: Optional[asyncio.Event] = None

    def hold(self) -> None:
        """Pause the next stream after its first chunk until release()."""
        self._release = asyncio.Event()
        self.paused = asyncio.Event()

    def release(self) -> None:
        assert self._release is not None
        self._release.set()

    def _next_script(self) -> Script:
        if len(self._scripts) > 1:
            return self._scripts.pop(0)
        return self._scripts[0] if self._scripts else ""

    async def stream(self, messages, system="", max_tokens=4096, images=None):
        self.calls.append(
            {"mode": "stream", "messages": messages, "system": system, "images": images}
        )
        if self.error is not None:
            raise self.error
        script = self._next_script()
        chunks = [script] if isinstance(script, str) else list(script)
        for index, chunk in enumerate(chunks):
            if index == 1 and self._release is not None:
                self.paused.set()
                await self._release.wait()
            yield StreamChunk(text=chunk)
        yield StreamChunk(text="", is_final=True, usage={"input_tokens": 1, "output_tokens": 1})

    async def complete(self, messages, system="", max_tokens=4096, images=None):
        self.calls.append(
            {"mode": "complete", "messages": messages, "system": system, "images": images}
        )
        if self.error is not None:
            raise self.error
        script = self._next_script()
        return script if isinstance(script, str) else "".join(script)

    @property
    def model_id(self) -> str:
        return "fake-model"

    @property
    def provider(self) -> str:
        return "fake"


class FixedClock:
    """Controllable wall clock for cooldown tests."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_gate(store: MemoryBlobStore, tier: Tier = Tier.FREE, clock=None) -> QuotaGate:
    cooldown = CooldownState(store, clock=clock) if clock else CooldownState(store)
    return QuotaGate(BlobUsageStore(store, tier), cooldown)


def make_reconciler(
    adapter: FakeAdapter,
    store: Optional[MemoryBlobStore] = None,
    tier: Tier = Tier.FREE,
    gate: Optional[QuotaGate] = None,
) -> ConversationReconciler:
    store = store or MemoryBlobStore()
    gate = gate or make_gate(store, tier)
    builder = PromptBuilder(token_counter=TokenCounter("claude-haiku-4-5-20251001"))
    return ConversationReconciler(CompletionDispatcher(adapter), gate, prompt_builder=builder)
