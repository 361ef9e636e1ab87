from datetime import datetime, timedelta, timezone

import pytest

from app.modules.docauthoring.services.agents import build_default_registry
from app.modules.docauthoring.services.context import AuthoringContext
from app.modules.docauthoring.services.doc_session import DocSessionStore
from app.modules.docauthoring.services.document_storage import LocalDocumentStorage
from app.modules.docauthoring.services.session_router import SessionRouter
from app.modules.docauthoring.services.state_store import InMemoryKeyValueStore
from core.config import Settings


class ScriptedModel:
    """Language model double that replays canned replies in order.

    A reply may be a string, a list of string chunks, or an exception instance
    to raise from the stream.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def send_prompt(self, messages, token=None):
        self.prompts.append(messages)
        if not self.replies:
            raise AssertionError(f"unexpected model call #{len(self.prompts)}")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        for chunk in reply if isinstance(reply, list) else [reply]:
            yield chunk

    def prompt_text(self, index: int = -1) -> str:
        return "\n".join(m["content"] for m in self.prompts[index])


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingStore(InMemoryKeyValueStore):
    async def set(self, key, value):
        raise ConnectionError("store offline")


class DisposableStore(InMemoryKeyValueStore):
    def __init__(self):
        super().__init__()
        self.disposed = False

    async def dispose(self):
        self.disposed = True


@pytest.fixture
def config(tmp_path):
    return Settings(
        _env_file=None,
        WORKSPACE_ROOT=str(tmp_path),
        OPENAI_API_KEY=None,
        STATE_BACKEND="memory",
    )


@pytest.fixture
def workspace(tmp_path):
    return str(tmp_path)


@pytest.fixture
def storage():
    return LocalDocumentStorage()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def doc_store(storage, config, clock):
    return DocSessionStore(storage, config=config, clock=clock)


@pytest.fixture
def make_ctx(workspace):
    def _make(model=None, output=None):
        return AuthoringContext(workspace_root=workspace, model=model, output=output)
    return _make


@pytest.fixture
def router(doc_store, store, config, clock):
    return SessionRouter(
        doc_sessions=doc_store,
        agents=build_default_registry(),
        store=store,
        config=config,
        clock=clock,
    )
