"""
Conversation turn pipeline: load → validate image → retry loop → persist.

Shared by the sync endpoint, the streaming endpoint and the job workers so
all three apply orchestrator events the same way:

  1. Load the conversation (404 if missing)
  2. Validate/downscale the image attachment (400 before any model call)
  3. Run the retry orchestrator with the requested LLM
  4. Apply the returned events to a fresh copy of the conversation and save
  5. Return a TurnResultOut
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable

from ..schemas import MeshOut, TurnRequest, TurnResultOut
from .conversation_store import Conversation, ConversationStore
from .image_utils import ImageAttachment, validate_image
from .llm_client import GenerationClient, build_generation_client
from .orchestrator import ClaimedStream, RetryOrchestrator, SingleFlight, TurnProgress, TurnResult
from .sandbox import SandboxExecutor

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], GenerationClient]


def result_to_out(result: TurnResult, conversation_id: str, llm_name: str) -> TurnResultOut:
    return TurnResultOut(
        success=result.success,
        status=result.status.value,
        message=result.message,
        conversation_id=conversation_id,
        code=result.code,
        parameters=result.parameters,
        meshes=[MeshOut(**m.to_dict()) for m in result.meshes],
        retry_log=result.attempts,
        error=result.error,
        cost_summary=result.cost_summary,
        llm_used=llm_name,
    )


def progress_to_wire(progress: TurnProgress, conversation_id: str, llm_name: str) -> dict[str, Any]:
    """NDJSON line for one progress event."""
    if progress.kind == "delta":
        return {"type": "delta", "text": progress.text, "attempt": progress.attempt}
    if progress.kind == "state":
        line: dict[str, Any] = {
            "type": "state",
            "state": progress.state.value if progress.state else None,
            "attempt": progress.attempt,
            "max_attempts": progress.max_attempts,
        }
        if progress.error:
            line["error"] = progress.error
        return line
    assert progress.result is not None
    return {"type": "result", "result": result_to_out(progress.result, conversation_id, llm_name).model_dump(mode="json")}


class TurnService:
    def __init__(
        self,
        settings: Any,
        store: ConversationStore,
        executor: SandboxExecutor | None = None,
        client_factory: ClientFactory | None = None,
        guard: SingleFlight | None = None,
    ):
        self.settings = settings
        self.store = store
        self.executor = executor or SandboxExecutor(
            cache_size=settings.cache_size,
            max_steps=settings.sandbox_max_steps,
            timeout_seconds=settings.sandbox_timeout_seconds,
        )
        self.client_factory = client_factory or (lambda name: build_generation_client(name, settings))
        self.guard = guard or SingleFlight()

    def llm_name(self, request: TurnRequest) -> str:
        return request.llm_name or self.settings.default_llm

    def orchestrator(self, llm_name: str, max_attempts: int | None = None) -> RetryOrchestrator:
        return RetryOrchestrator(
            client=self.client_factory(llm_name),
            executor=self.executor,
            max_attempts=max_attempts or self.settings.max_attempts,
            max_history_turns=self.settings.max_history_turns,
            crease_angle=self.settings.crease_angle_degrees,
            guard=self.guard,
        )

    def prepare(self, conversation_id: str, request: TurnRequest) -> tuple[Conversation, ImageAttachment | None]:
        """Raises ConversationNotFoundError / ImageValidationError before any model call."""
        conversation = self.store.get(conversation_id)
        image = None
        if request.image_attachment is not None:
            image = validate_image(
                request.image_attachment.data,
                request.image_attachment.mime_type,
                max_bytes=self.settings.max_image_bytes,
                max_dimension=self.settings.max_image_dimension,
            )
        return conversation, image

    def commit(self, conversation_id: str, result: TurnResult) -> Conversation:
        conversation = self.store.get(conversation_id)
        conversation.apply_all(result.events)
        self.store.save(conversation)
        logger.info(
            "Conversation %s: %s after %d attempt(s), %d turns",
            conversation_id, result.status.value, result.attempt_count, len(conversation.turns),
        )
        return conversation

    async def run(self, conversation_id: str, request: TurnRequest) -> TurnResultOut:
        conversation, image = self.prepare(conversation_id, request)
        llm_name = self.llm_name(request)
        orchestrator = self.orchestrator(llm_name, request.max_attempts)
        result = await orchestrator.run_turn(
            request.prompt,
            history=conversation.turns,
            current_code=conversation.current_code,
            image=image,
            conversation_id=conversation_id,
        )
        self.commit(conversation_id, result)
        return result_to_out(result, conversation_id, llm_name)

    def stream(self, conversation_id: str, request: TurnRequest) -> AsyncIterator[dict[str, Any]]:
        """Validate and claim the conversation now; the iterator yields NDJSON-ready dicts.

        Events are only applied once the terminal result arrives, so a
        consumer that disconnects mid-stream leaves the conversation as it was.
        """
        conversation, image = self.prepare(conversation_id, request)
        llm_name = self.llm_name(request)
        orchestrator = self.orchestrator(llm_name, request.max_attempts)
        progress_iter = orchestrator.stream_turn(
            request.prompt,
            history=conversation.turns,
            current_code=conversation.current_code,
            image=image,
            conversation_id=conversation_id,
        )

        async def _lines() -> AsyncIterator[dict[str, Any]]:
            try:
                async for progress in progress_iter:
                    if progress.kind == "result" and progress.result is not None:
                        self.commit(conversation_id, progress.result)
                    yield progress_to_wire(progress, conversation_id, llm_name)
            finally:
                await progress_iter.aclose()

        return ClaimedStream(_lines(), progress_iter.release)
