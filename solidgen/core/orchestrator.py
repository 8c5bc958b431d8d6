"""
Retry orchestrator: generate → sandbox-execute → validate → repair loop.

One user turn runs through:

  thinking → generating → validating → accepted
                                     ↘ retrying → thinking → ...  → exhausted

plus the terminal states configuration_error, transport_error and
unidentifiable. Attempt 1 sees the true history (and the image, if any);
later attempts see the true history plus one synthetic pair: the failed
script as an assistant turn and a corrective prompt as a user turn. The
synthetic pair is never persisted.

The orchestrator does not touch a store. Its terminal result carries the
events (TurnAppended / TurnReplaced / CodeAccepted) the caller applies, so
a cancelled turn leaves the conversation untouched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Sequence

from ..schemas import CostSummary, ImageAttachmentModel, RetryEntry
from .code_processor import extract_parameters, is_unidentifiable
from .conversation_store import (
    CodeAccepted,
    ConversationEvent,
    ConversationTurn,
    TurnAppended,
    TurnReplaced,
)
from .errors import ConversationBusyError
from .image_utils import ImageAttachment
from .llm_client import GenerationClient, GenerationRequest, UsageInfo
from .mesh_converter import DEFAULT_CREASE_ANGLE, RenderMesh, parts_to_meshes
from .prompt_builder import build_fix_prompt, build_messages, build_system_prompt, expand_prompt, trim_history
from .sandbox import Accepted, SandboxExecutor

logger = logging.getLogger(__name__)

PLACEHOLDER_REPLY = "I was unable to generate valid code for that request."

# Providers reject empty message content, so a blank failed reply is sent as this.
EMPTY_REPLY = "(empty response)"

CONFIGURATION_MESSAGE = "The server is missing its model credentials. Please contact the administrator."
TRANSPORT_MESSAGE = "The model service is unavailable right now. Please try again."
UNIDENTIFIABLE_MESSAGE = "I couldn't identify an object in that photo. Try another photo or describe it in words."


def exhausted_message(attempts: int, has_image: bool) -> str:
    if has_image:
        return (
            f"I couldn't build a valid model from that photo after {attempts} attempts. "
            "Please try again or try describing the object in words."
        )
    return (
        f"I couldn't generate a valid model after {attempts} attempts. "
        "Please try rephrasing or simplifying the request."
    )


class TurnState(str, Enum):
    thinking = "thinking"
    generating = "generating"
    validating = "validating"
    retrying = "retrying"


class TurnStatus(str, Enum):
    accepted = "accepted"
    exhausted = "exhausted"
    configuration_error = "configuration_error"
    transport_error = "transport_error"
    unidentifiable = "unidentifiable"


@dataclass
class TurnResult:
    status: TurnStatus
    message: str
    events: list[ConversationEvent] = field(default_factory=list)
    code: str | None = None
    outcome: Accepted | None = None
    meshes: list[RenderMesh] = field(default_factory=list)
    parameters: list[str] = field(default_factory=list)
    attempts: list[RetryEntry] = field(default_factory=list)
    cost_summary: CostSummary = field(default_factory=CostSummary)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == TurnStatus.accepted

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


@dataclass
class TurnProgress:
    """Streamed to the caller: ``state`` changes, ``delta`` text, one final ``result``."""

    kind: str
    attempt: int = 0
    max_attempts: int = 0
    state: TurnState | None = None
    text: str = ""
    error: str = ""
    result: TurnResult | None = None


# ---------------------------------------------------------------------------
# Single-flight guard
# ---------------------------------------------------------------------------

class SingleFlight:
    """At most one in-flight turn per conversation id.

    Only touched from the event loop, so a plain set is enough: claim and
    release never straddle an ``await``.
    """

    def __init__(self):
        self._active: set[str] = set()

    def claim(self, key: str) -> None:
        if key in self._active:
            raise ConversationBusyError(f"a turn is already in progress for conversation {key}")
        self._active.add(key)

    def release(self, key: str) -> None:
        self._active.discard(key)

    def busy(self, key: str) -> bool:
        return key in self._active


class ClaimedStream:
    """Async iterator that holds a single-flight claim until it is done.

    The claim is released exactly once: when the inner iterator finishes or
    raises, when ``aclose`` is called (started or not), or when the object is
    dropped without either. An async generator that never started never runs
    its ``finally``, so the release cannot live there.
    """

    def __init__(self, inner: AsyncIterator, on_close: Callable[[], None]):
        self._inner = inner
        self._on_close: Callable[[], None] | None = on_close

    def __aiter__(self) -> "ClaimedStream":
        return self

    async def __anext__(self):
        try:
            return await self._inner.__anext__()
        except BaseException:
            self.release()
            raise

    async def aclose(self) -> None:
        try:
            await self._inner.aclose()
        finally:
            self.release()

    def release(self) -> None:
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            on_close()

    def __del__(self):
        self.release()


def _compute_cost_summary(usage_list: list[UsageInfo]) -> CostSummary:
    return CostSummary(
        total_input_tokens=sum(u.input_tokens for u in usage_list),
        total_output_tokens=sum(u.output_tokens for u in usage_list),
        total_usd=round(sum(u.cost_usd for u in usage_list), 4),
        calls=len(usage_list),
        details=[u.to_dict() for u in usage_list],
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class RetryOrchestrator:
    def __init__(
        self,
        client: GenerationClient,
        executor: SandboxExecutor,
        max_attempts: int = 3,
        max_history_turns: int = 20,
        crease_angle: float = DEFAULT_CREASE_ANGLE,
        guard: SingleFlight | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.executor = executor
        self.max_attempts = max_attempts
        self.max_history_turns = max_history_turns
        self.crease_angle = crease_angle
        self.guard = guard or SingleFlight()

    async def run_turn(
        self,
        prompt: str,
        history: Sequence[ConversationTurn] = (),
        current_code: str | None = None,
        image: ImageAttachment | None = None,
        conversation_id: str | None = None,
    ) -> TurnResult:
        """Run one turn to its terminal state and return the result."""
        result: TurnResult | None = None
        async for progress in self.stream_turn(prompt, history, current_code, image, conversation_id):
            if progress.kind == "result":
                result = progress.result
        assert result is not None
        return result

    def stream_turn(
        self,
        prompt: str,
        history: Sequence[ConversationTurn] = (),
        current_code: str | None = None,
        image: ImageAttachment | None = None,
        conversation_id: str | None = None,
    ) -> AsyncIterator[TurnProgress]:
        """Claim the conversation now, then stream progress of the turn.

        Raises ConversationBusyError immediately if the conversation already
        has a turn in flight.
        """
        if conversation_id is None:
            return self._turn(prompt, list(history), current_code, image)
        self.guard.claim(conversation_id)
        return ClaimedStream(
            self._turn(prompt, list(history), current_code, image),
            lambda: self.guard.release(conversation_id),
        )

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _user_turn_event(history: list[ConversationTurn], user_turn: ConversationTurn) -> ConversationEvent:
        # A trailing user turn is left behind by an aborted request; replace
        # it so roles keep alternating.
        if history and history[-1].role == "user":
            return TurnReplaced(index=len(history) - 1, turn=user_turn)
        return TurnAppended(turn=user_turn)

    def _finish(
        self,
        status: TurnStatus,
        message: str,
        user_event: ConversationEvent,
        attempts: list[RetryEntry],
        usage: list[UsageInfo],
        error: str | None = None,
    ) -> TurnResult:
        placeholder = ConversationTurn(role="assistant", content=PLACEHOLDER_REPLY)
        return TurnResult(
            status=status,
            message=message,
            events=[user_event, TurnAppended(turn=placeholder)],
            attempts=attempts,
            cost_summary=_compute_cost_summary(usage),
            error=error,
        )

    async def _turn(
        self,
        prompt: str,
        history: list[ConversationTurn],
        current_code: str | None,
        image: ImageAttachment | None,
    ) -> AsyncIterator[TurnProgress]:
        n = self.max_attempts
        has_image = image is not None
        user_turn = ConversationTurn(
            role="user",
            content=prompt,
            image_attachment=(
                ImageAttachmentModel(data=image.base64, mime_type=image.mime_type) if image else None
            ),
        )
        user_event = self._user_turn_event(history, user_turn)

        prior = history[:-1] if isinstance(user_event, TurnReplaced) else history
        expanded = expand_prompt(prompt)
        turns = trim_history(
            [(t.role, t.content) for t in prior] + [("user", expanded.text)],
            self.max_history_turns,
        )
        system = build_system_prompt(current_code=current_code, has_image=has_image)

        attempts: list[RetryEntry] = []
        usage: list[UsageInfo] = []
        failed_script: str | None = None
        last_error: str | None = None

        for attempt in range(1, n + 1):
            logger.info("[ATTEMPT %d/%d] generating (image=%s)", attempt, n, "yes" if has_image else "no")
            yield TurnProgress(kind="state", state=TurnState.thinking, attempt=attempt, max_attempts=n)

            if attempt == 1:
                messages = build_messages(
                    turns,
                    image_data=image.data if image else None,
                    image_mime=image.mime_type if image else None,
                )
            else:
                shown = failed_script if failed_script and failed_script.strip() else EMPTY_REPLY
                fix = build_fix_prompt(prompt, shown, last_error or "")
                messages = build_messages(turns + [("assistant", shown), ("user", fix)])

            request = GenerationRequest(system=system, messages=messages, current_code=current_code)
            code: str | None = None
            started = False
            async for event in self.client.stream(request):
                if event.type == "delta":
                    if not started:
                        started = True
                        yield TurnProgress(kind="state", state=TurnState.generating, attempt=attempt, max_attempts=n)
                    yield TurnProgress(kind="delta", text=event.text, attempt=attempt, max_attempts=n)
                elif event.type == "done":
                    code = event.code
                    if event.usage is not None:
                        usage.append(event.usage)
                    break
                else:
                    if event.error_kind == "configuration":
                        logger.error("[ATTEMPT %d] configuration error: %s", attempt, event.error)
                        result = self._finish(
                            TurnStatus.configuration_error, CONFIGURATION_MESSAGE,
                            user_event, attempts, usage, error=event.error,
                        )
                    else:
                        logger.error("[ATTEMPT %d] transport error: %s", attempt, event.error)
                        result = self._finish(
                            TurnStatus.transport_error, TRANSPORT_MESSAGE,
                            user_event, attempts, usage, error=event.error,
                        )
                    yield TurnProgress(kind="result", result=result, attempt=attempt, max_attempts=n)
                    return

            code = code or ""

            if has_image and is_unidentifiable(code):
                logger.info("[ATTEMPT %d] model could not identify the object in the image", attempt)
                attempts.append(RetryEntry(
                    attempt=attempt, success=False, code_length=len(code),
                    error_text="unidentifiable object", timestamp=datetime.now().isoformat(),
                ))
                result = self._finish(TurnStatus.unidentifiable, UNIDENTIFIABLE_MESSAGE, user_event, attempts, usage)
                yield TurnProgress(kind="result", result=result, attempt=attempt, max_attempts=n)
                return

            yield TurnProgress(kind="state", state=TurnState.validating, attempt=attempt, max_attempts=n)
            t0 = time.time()
            outcome = await asyncio.to_thread(self.executor.execute, code)
            entry = RetryEntry(
                attempt=attempt,
                success=outcome.ok,
                code_length=len(code),
                timestamp=datetime.now().isoformat(),
            )

            if isinstance(outcome, Accepted):
                attempts.append(entry)
                meshes = await asyncio.to_thread(parts_to_meshes, outcome.parts, self.crease_angle)
                logger.info(
                    "[ATTEMPT %d] SUCCESS: %d part(s), %d triangles (%.2fs)",
                    attempt, len(meshes), sum(m.triangle_count for m in meshes), time.time() - t0,
                )
                result = TurnResult(
                    status=TurnStatus.accepted,
                    message="",
                    events=[
                        user_event,
                        TurnAppended(turn=ConversationTurn(role="assistant", content=code)),
                        CodeAccepted(code=code, prompt=prompt),
                    ],
                    code=code,
                    outcome=outcome,
                    meshes=meshes,
                    parameters=extract_parameters(code),
                    attempts=attempts,
                    cost_summary=_compute_cost_summary(usage),
                )
                yield TurnProgress(kind="result", result=result, attempt=attempt, max_attempts=n)
                return

            entry.error_text = outcome.error[:3000]
            attempts.append(entry)
            failed_script, last_error = code, outcome.error

            if attempt < n:
                logger.info("[ATTEMPT %d] FAILED: %s; asking the model to fix...", attempt, outcome.error[:200])
                yield TurnProgress(
                    kind="state", state=TurnState.retrying, attempt=attempt, max_attempts=n, error=outcome.error,
                )
            else:
                logger.info("[ATTEMPT %d] FAILED: no more retries", attempt)

        result = self._finish(
            TurnStatus.exhausted, exhausted_message(n, has_image), user_event, attempts, usage, error=last_error,
        )
        yield TurnProgress(kind="result", result=result, attempt=n, max_attempts=n)
