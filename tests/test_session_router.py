import json
from dataclasses import dataclass

from app.modules.docauthoring.services.agents import AgentRegistry, build_default_registry
from app.modules.docauthoring.services.conversation_state import SESSION_STATE_KEY, SessionMetadata
from app.modules.docauthoring.services.doc_session import FALLBACK_NEXT_QUESTION
from app.modules.docauthoring.services.session_router import NO_AGENT_ERROR, ConversationTurn, SessionRouter
from conftest import FailingStore, ScriptedModel

KICKOFF = "this will be a project that will train local models for Forex exchange trading using unsloth"
SWITCH = "switch to a new spec document for deployment hardening"
CLASSIFY_IDEA = json.dumps({"docType": "brainstorm", "title": "Local Forex Model Training Using Unsloth"})
IDEA_DRAFT = "# Local Forex Model Training Using Unsloth\n\n## Concept\n\nTrain locally.\n"
SWITCH_INTENT = json.dumps({
    "action": "start_new_doc",
    "confidence": 0.64,
    "reason": "User asked for a separate spec",
    "requiresConfirmation": True,
    "targetDocType": "spec",
    "targetAgent": None,
})


def _idea_path(tmp_path):
    return tmp_path / "docs" / "ideas" / "local-forex-model-training-using-unsloth.md"


async def _kickoff_and_finish(router, make_ctx, model):
    ctx = make_ctx(model)
    started = await router.route_user_input(KICKOFF, ctx)
    finished = await router.route_user_input("done", ctx)
    return started, finished


async def test_kickoff_during_unbound_auto_chat_starts_document(router, make_ctx):
    await router.enable_auto_chat("prd-creator")
    model = ScriptedModel(
        json.dumps({"docType": "prd", "title": "Forex Model Trainer"}),
        "# Forex Model Trainer\n",
        "Which currency pairs should v1 support?",
    )

    result = await router.route_user_input(KICKOFF, make_ctx(model))

    assert model.calls == 3
    assert result.routed_to == "conversation"
    assert result.should_continue
    assert "PRD Creator" in result.response
    assert not router.auto_chat.state.is_active
    assert router.active_doc_session_id == result.session_id


async def test_unbound_auto_chat_routes_to_agent(router, make_ctx):
    await router.enable_auto_chat("prd-creator")
    emitted = []
    model = ScriptedModel("Agent direct response")

    result = await router.route_user_input("hello there, help me think this through", make_ctx(model, emitted.append))

    assert result.routed_to == "agent"
    assert result.agent_name == "prd-creator"
    assert result.response == "Agent direct response"
    assert result.should_continue is True
    assert emitted and "Continue the conversation" in emitted[0]
    assert router.auto_chat.state.message_count == 1


async def test_document_bound_auto_chat_continues_document(router, make_ctx, tmp_path):
    doc = tmp_path / "docs" / "prd" / "forex-trader.md"
    doc.parent.mkdir(parents=True)
    doc.write_text("# Forex Trader\n\n## Overview\n\nLocal models.\n")
    await router.enable_auto_chat("prd-creator", str(doc), "prd")
    model = ScriptedModel("Which trading risk limits are mandatory for v1?")

    result = await router.route_user_input("Add risk controls and leverage limits to the document.", make_ctx(model))

    assert model.calls == 1
    assert result.routed_to == "conversation"
    assert "Which trading risk limits are mandatory for v1?" in result.response
    assert router.active_doc_session_id == result.session_id
    assert router.auto_chat.state.context.conversation_session_id == result.session_id


async def test_resume_after_done_revises_same_document(router, make_ctx, tmp_path):
    model = ScriptedModel(
        CLASSIFY_IDEA,
        IDEA_DRAFT,
        "What hardware do you have?",
        "---DOCUMENT---\n# Local Forex Model Training Using Unsloth\n\nImproved with fixes from review.\n"
        "---QUESTION---\nWhich remaining risk should we refine next?",
    )
    _, finished = await _kickoff_and_finish(router, make_ctx, model)
    assert not finished.should_continue
    assert router.active_doc_session_id is None

    result = await router.route_user_input("fix the issues found in the document", make_ctx(model))

    assert model.calls == 4
    assert result.routed_to == "conversation"
    assert "Which remaining risk should we refine next?" in result.response
    assert "Improved with fixes from review." in _idea_path(tmp_path).read_text()
    assert router.last_document.document_path == str(_idea_path(tmp_path))
    assert router.agents.get_current_agent().name == "brainstormer"


async def test_switch_requires_confirmation_then_starts_spec(router, make_ctx, tmp_path):
    model = ScriptedModel(
        CLASSIFY_IDEA,
        IDEA_DRAFT,
        "What hardware do you have?",
        SWITCH_INTENT,
        "# Deployment Hardening Spec\n",
        "Which security controls are required before go-live?",
    )
    await _kickoff_and_finish(router, make_ctx, model)

    prompt = await router.route_user_input(SWITCH, make_ctx(model))

    assert prompt.routed_to == "agent"
    assert prompt.should_continue
    assert "Reply `yes`" in prompt.response
    assert router.pending_decision is not None
    assert not (tmp_path / "docs" / "spec").exists()

    confirmed = await router.route_user_input("yes", make_ctx(model))

    assert model.calls == 6
    assert confirmed.routed_to == "conversation"
    assert "Which security controls are required before go-live?" in confirmed.response
    assert router.pending_decision is None
    spec = tmp_path / "docs" / "spec" / "switch-to-a-new-spec-document-for-deployment.md"
    assert spec.read_text() == "# Deployment Hardening Spec"
    assert _idea_path(tmp_path).exists()


async def test_declined_switch_keeps_current_document(router, make_ctx, tmp_path):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?", SWITCH_INTENT)
    await _kickoff_and_finish(router, make_ctx, model)
    await router.route_user_input(SWITCH, make_ctx(model))

    result = await router.route_user_input("no", make_ctx(model))

    assert model.calls == 4
    assert result.routed_to == "agent"
    assert result.response.startswith("Okay, no new document.")
    assert "docs/ideas/local-forex-model-training-using-unsloth.md" in result.response
    assert result.should_continue is False
    assert router.pending_decision is None
    assert not (tmp_path / "docs" / "spec").exists()


async def _open_idea_session(router, make_ctx, model):
    started = await router.route_user_input(KICKOFF, make_ctx(model))
    assert router.active_doc_session_id == started.session_id
    return started.session_id


async def test_confirmed_switch_closes_open_session(router, make_ctx, tmp_path):
    model = ScriptedModel(
        CLASSIFY_IDEA,
        IDEA_DRAFT,
        "What hardware do you have?",
        SWITCH_INTENT,
        "# Deployment Hardening Spec\n",
        "Which security controls are required before go-live?",
    )
    old_id = await _open_idea_session(router, make_ctx, model)

    prompt = await router.route_user_input(SWITCH, make_ctx(model))

    assert model.calls == 4
    assert prompt.routed_to == "agent"
    assert "editing session closed" in prompt.response
    assert router.pending_decision.session_to_close == old_id
    assert router.doc_sessions.has_session(old_id)

    confirmed = await router.route_user_input("yes", make_ctx(model))

    assert model.calls == 6
    assert confirmed.routed_to == "conversation"
    assert not router.doc_sessions.has_session(old_id)
    assert router.active_doc_session_id == confirmed.session_id != old_id
    assert (tmp_path / "docs" / "spec" / "switch-to-a-new-spec-document-for-deployment.md").exists()
    assert _idea_path(tmp_path).exists()


async def test_declined_switch_keeps_open_session(router, make_ctx, tmp_path):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?", SWITCH_INTENT)
    old_id = await _open_idea_session(router, make_ctx, model)
    await router.route_user_input(SWITCH, make_ctx(model))

    result = await router.route_user_input("no", make_ctx(model))

    assert model.calls == 4
    assert result.should_continue is True
    assert "Keep replying to continue the current document." in result.response
    assert router.doc_sessions.has_session(old_id)
    assert router.active_doc_session_id == old_id
    assert not (tmp_path / "docs" / "spec").exists()


async def test_unclear_reply_asks_again(router, make_ctx):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?", SWITCH_INTENT)
    await _kickoff_and_finish(router, make_ctx, model)
    await router.route_user_input(SWITCH, make_ctx(model))

    result = await router.route_user_input("hmm, what would that change?", make_ctx(model))

    assert result.response.startswith("I didn't catch that.")
    assert "Reply `yes`" in result.response
    assert router.pending_decision is not None


async def test_expired_decision_is_discarded(router, make_ctx, clock, config, tmp_path):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?", SWITCH_INTENT)
    await _kickoff_and_finish(router, make_ctx, model)
    await router.route_user_input(SWITCH, make_ctx(model))

    clock.advance(minutes=config.PENDING_DECISION_TTL_MINUTES, seconds=1)
    result = await router.route_user_input("yes", make_ctx())

    assert router.pending_decision is None
    assert result.routed_to == "agent"
    assert not (tmp_path / "docs" / "spec").exists()


async def test_confirmation_reply_is_consumed_only_when_clear(router, make_ctx):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?", SWITCH_INTENT)
    await _kickoff_and_finish(router, make_ctx, model)
    await router.route_user_input(SWITCH, make_ctx(model))
    pending = router.pending_decision

    await router.route_user_input("not sure", make_ctx())

    assert router.pending_decision is pending


async def test_stale_active_session_is_cleared(router, make_ctx):
    router.active_doc_session_id = "docsess_gone"

    result = await router.route_user_input("thanks, that helps", make_ctx())

    assert router.active_doc_session_id is None
    assert result.routed_to == "agent"


async def test_model_failure_during_continuation_keeps_session(router, doc_store, make_ctx, tmp_path):
    doc = tmp_path / "docs" / "prd" / "trader.md"
    doc.parent.mkdir(parents=True)
    doc.write_text("# Trader\n")
    attached = await doc_store.start_session_from_existing_document(str(doc), make_ctx())
    router.active_doc_session_id = attached.session_id

    result = await router.route_user_input("please add the risk section", make_ctx(ScriptedModel(RuntimeError("LLM down"))))

    assert result.routed_to == "conversation"
    assert result.should_continue is True
    assert FALLBACK_NEXT_QUESTION in result.response
    assert router.active_doc_session_id == attached.session_id
    assert doc.read_text() == "# Trader\n"


async def test_no_agent_is_an_error(doc_store, store, config, clock, make_ctx):
    router = SessionRouter(doc_store, AgentRegistry(), store, config=config, clock=clock)

    result = await router.route_user_input("thanks, that helps", make_ctx())

    assert result.routed_to == "error"
    assert result.error == NO_AGENT_ERROR


async def test_unexpected_failure_becomes_error_result(doc_store, store, config, clock, make_ctx):
    class BrokenAgent:
        name = "broken"

        async def handle(self, request):
            raise RuntimeError("kaboom")

    router = SessionRouter(doc_store, AgentRegistry([BrokenAgent()], current="broken"), store, config=config, clock=clock)

    result = await router.route_user_input("thanks, that helps", make_ctx())

    assert result.routed_to == "error"
    assert "kaboom" in result.error
    assert "documents were not changed" in result.response


async def test_agent_without_model_returns_guidance(router, make_ctx):
    result = await router.route_user_input("thanks, that helps", make_ctx())

    assert result.routed_to == "agent"
    assert result.agent_name == "prd-creator"
    assert "no language model is available" in result.response


async def test_kickoff_without_model_does_not_open_session(router, make_ctx):
    result = await router.route_user_input(KICKOFF, make_ctx())

    assert result.routed_to == "conversation"
    assert result.should_continue is False
    assert router.active_doc_session_id is None


async def test_kickoff_survives_malformed_doc_type(router, make_ctx, tmp_path):
    model = ScriptedModel(
        json.dumps({"docType": ["spec", "prd"], "title": "Forex Trainer"}),
        "# Forex Trainer\n",
        "Which currency pairs first?",
    )

    result = await router.route_user_input(KICKOFF, make_ctx(model))

    assert result.routed_to == "conversation"
    assert result.error is None
    assert result.agent_name == "prd-creator"
    assert (tmp_path / "docs" / "prd" / "forex-trainer.md").exists()


async def test_routing_survives_store_outage(doc_store, config, clock, make_ctx, tmp_path):
    router = SessionRouter(doc_store, build_default_registry(), FailingStore(), config=config, clock=clock)
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?")

    assert await router.enable_auto_chat("brainstormer")
    started = await router.route_user_input(KICKOFF, make_ctx(model))
    finished = await router.route_user_input("done", make_ctx(model))

    assert started.routed_to == "conversation" and started.error is None
    assert finished.routed_to == "conversation" and finished.error is None
    assert router.last_document.document_path == str(_idea_path(tmp_path))
    await router.set_active_session("conv_1", SessionMetadata("prd-creator", clock(), clock()))
    assert router.get_session_state().active_session_id == "conv_1"


async def test_last_document_survives_reload(router, doc_store, store, config, clock, make_ctx, tmp_path):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?")
    await _kickoff_and_finish(router, make_ctx, model)

    restored = SessionRouter(doc_store, build_default_registry(), store, config=config, clock=clock)
    await restored.load_state()

    assert restored.last_document.document_path == str(_idea_path(tmp_path))
    assert restored.last_document.agent_name == "brainstormer"


# -------------------- legacy conversation sessions --------------------

@dataclass
class FakeSession:
    is_active: bool = True


class FakeConversationManager:
    def __init__(self, reply="Test response", error=None, sessions=None):
        self.reply = reply
        self.error = error
        self.sessions = sessions if sessions is not None else {"conv_1": FakeSession()}
        self.inputs = []

    def get_session(self, session_id):
        return self.sessions.get(session_id)

    async def continue_conversation(self, session_id, user_input):
        self.inputs.append(user_input)
        if self.error:
            raise self.error
        return ConversationTurn(self.reply)


def _legacy_router(doc_store, store, config, clock, manager):
    return SessionRouter(
        doc_store,
        build_default_registry(),
        store,
        conversation_manager=manager,
        config=config,
        clock=clock,
    )


async def test_legacy_session_is_continued(doc_store, store, config, clock, make_ctx):
    manager = FakeConversationManager()
    router = _legacy_router(doc_store, store, config, clock, manager)
    await router.set_active_session("conv_1", SessionMetadata("requirements-gatherer", clock(), clock()))

    result = await router.route_user_input("test input", make_ctx())

    assert result.routed_to == "conversation"
    assert result.session_id == "conv_1"
    assert result.agent_name == "requirements-gatherer"
    assert result.response == "Test response"
    assert result.should_continue
    assert manager.inputs == ["test input"]
    assert router.get_session_metadata("conv_1").response_count == 1


async def test_legacy_session_error_clears_session(doc_store, store, config, clock, make_ctx):
    manager = FakeConversationManager(error=RuntimeError("Conversation failed"))
    router = _legacy_router(doc_store, store, config, clock, manager)
    await router.set_active_session("conv_1", SessionMetadata("prd-creator", clock(), clock()))

    result = await router.route_user_input("test input", make_ctx())

    assert result.routed_to == "error"
    assert "Conversation error" in result.error
    assert not router.has_active_session()


async def test_missing_legacy_session_falls_through_to_agent(doc_store, store, config, clock, make_ctx):
    manager = FakeConversationManager(sessions={})
    router = _legacy_router(doc_store, store, config, clock, manager)
    await router.set_active_session("conv_1", SessionMetadata("prd-creator", clock(), clock()))

    result = await router.route_user_input("thanks, that helps", make_ctx())

    assert result.routed_to == "agent"
    assert not router.has_active_session()
    assert manager.inputs == []


async def test_session_metadata_bookkeeping(router, store, clock):
    await router.set_active_session("conv_1", SessionMetadata("prd-creator", clock(), clock()))
    await router.set_active_session("conv_2", SessionMetadata("solution-architect", clock(), clock()))

    assert router.get_session_by_agent("prd-creator") == "conv_1"
    assert router.get_session_state().active_session_id == "conv_2"
    persisted = await store.get(SESSION_STATE_KEY)
    assert set(persisted["sessionMetadata"]) == {"conv_1", "conv_2"}

    clock.advance(minutes=20)
    await router.update_session_activity("conv_2")
    clock.advance(minutes=15)

    assert await router.cleanup_inactive_sessions() == 1
    assert router.get_session_metadata("conv_1") is None
    assert router.get_session_by_agent("prd-creator") is None
    assert router.get_session_state().active_session_id == "conv_2"


async def test_snapshot_reports_active_document(router, make_ctx):
    model = ScriptedModel(CLASSIFY_IDEA, IDEA_DRAFT, "What hardware do you have?")
    await router.route_user_input(KICKOFF, make_ctx(model))

    snap = router.snapshot()

    assert snap["active_doc_session"]["doc_type"] == "brainstorm"
    assert snap["active_doc_session"]["turn_count"] == 1
    assert snap["last_document"]["agentName"] == "brainstormer"
    assert snap["pending_decision"] is None
