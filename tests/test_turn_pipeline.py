from __future__ import annotations

import asyncio
import base64
import io

import pytest
from PIL import Image

from conftest import BAD_NAME, CUBE, FakeClientFactory
from solidgen.config import SolidGenSettings
from solidgen.core.conversation_store import InMemoryConversationStore
from solidgen.core.errors import ConversationBusyError, ConversationNotFoundError, ImageValidationError
from solidgen.core.sandbox import SandboxExecutor
from solidgen.core.turn_pipeline import TurnService
from solidgen.schemas import TurnRequest


def _png_b64(size=(8, 8)) -> str:
    buf = io.BytesIO()
    Image.new("RGB", size, "white").save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def settings() -> SolidGenSettings:
    return SolidGenSettings(storage_dir=None, max_attempts=3)


def _service(settings, *replies) -> tuple[TurnService, FakeClientFactory]:
    factory = FakeClientFactory(*replies)
    service = TurnService(settings, InMemoryConversationStore(), executor=SandboxExecutor(), client_factory=factory)
    return service, factory


def _drain(lines):
    async def _go():
        return [line async for line in lines]
    return asyncio.run(_go())


class TestRun:
    def test_accepted_turn_is_persisted(self, settings):
        service, _ = _service(settings, CUBE)
        cid = service.store.create().id
        out = asyncio.run(service.run(cid, TurnRequest(prompt="a 10mm cube")))

        assert out.success
        assert out.status == "accepted"
        assert out.conversation_id == cid
        assert out.meshes[0].triangle_count == 12
        assert out.llm_used == "claude"

        conversation = service.store.get(cid)
        assert [t.role for t in conversation.turns] == ["user", "assistant"]
        assert conversation.current_code == CUBE
        assert conversation.title == "a 10mm cube"

    def test_exhausted_turn_stores_placeholder(self, settings):
        service, _ = _service(settings, BAD_NAME, BAD_NAME, BAD_NAME)
        cid = service.store.create(current_code="return sphere(2)").id
        out = asyncio.run(service.run(cid, TurnRequest(prompt="a cube")))

        assert not out.success
        assert out.status == "exhausted"
        assert len(out.retry_log) == 3
        conversation = service.store.get(cid)
        assert conversation.turns[-1].content.startswith("I was unable")
        assert conversation.current_code == "return sphere(2)"

    def test_unknown_conversation(self, settings):
        service, factory = _service(settings, CUBE)
        with pytest.raises(ConversationNotFoundError):
            asyncio.run(service.run("missing", TurnRequest(prompt="a cube")))
        assert factory.clients == []

    def test_bad_image_fails_before_any_model_call(self, settings):
        service, factory = _service(settings, CUBE)
        cid = service.store.create().id
        request = TurnRequest(prompt="this", image_attachment={"data": _png_b64(), "mime_type": "image/gif"})
        with pytest.raises(ImageValidationError):
            service.stream(cid, request)
        assert factory.clients == []
        assert not service.guard.busy(cid)

    def test_image_is_stored_on_the_user_turn(self, settings):
        service, _ = _service(settings, CUBE)
        cid = service.store.create().id
        request = TurnRequest(prompt="this", image_attachment={"data": _png_b64(), "mime_type": "image/png"})
        asyncio.run(service.run(cid, request))
        assert service.store.get(cid).turns[0].image_attachment.mime_type == "image/png"


class TestStream:
    def test_lines_end_with_result(self, settings):
        service, _ = _service(settings, BAD_NAME, CUBE)
        cid = service.store.create().id
        lines = _drain(service.stream(cid, TurnRequest(prompt="a cube")))

        kinds = [line["type"] for line in lines]
        assert kinds[-1] == "result"
        assert "delta" in kinds
        retrying = [line for line in lines if line.get("state") == "retrying"]
        assert retrying and retrying[0]["error"].startswith("NameError")
        assert lines[-1]["result"]["success"] is True
        assert service.store.get(cid).current_code == CUBE
        assert not service.guard.busy(cid)

    def test_second_turn_while_streaming_is_refused(self, settings):
        service, _ = _service(settings, CUBE)
        cid = service.store.create().id
        lines = service.stream(cid, TurnRequest(prompt="a cube"))
        with pytest.raises(ConversationBusyError):
            service.stream(cid, TurnRequest(prompt="another"))
        _drain(lines)
        assert not service.guard.busy(cid)

    def test_abandoned_stream_changes_nothing(self, settings):
        service, _ = _service(settings, CUBE)
        cid = service.store.create().id

        async def _first_then_close():
            lines = service.stream(cid, TurnRequest(prompt="a cube"))
            first = await lines.__anext__()
            await lines.aclose()
            return first

        first = asyncio.run(_first_then_close())
        assert first["type"] == "state"
        assert service.store.get(cid).turns == []
        assert not service.guard.busy(cid)

    def test_stream_closed_before_first_line_frees_the_conversation(self, settings):
        service, _ = _service(settings, CUBE, CUBE)
        cid = service.store.create().id

        async def _close_unstarted():
            lines = service.stream(cid, TurnRequest(prompt="a cube"))
            assert service.guard.busy(cid)
            await lines.aclose()

        asyncio.run(_close_unstarted())
        assert not service.guard.busy(cid)
        assert asyncio.run(service.run(cid, TurnRequest(prompt="a cube"))).success
