import json

import pytest

from app.modules.docauthoring.services.doc_session import (
    FALLBACK_FIRST_QUESTION,
    FALLBACK_NEXT_QUESTION,
    NO_MODEL_FIRST_QUESTION,
    DocSessionNotFound,
    is_completion_phrase,
    parse_classification,
    parse_refine_output,
)
from app.modules.docauthoring.services.doc_types import DocType
from app.modules.docauthoring.services.prompts.docgen import TRUNCATION_MARKER
from conftest import ScriptedModel

CLASSIFY_PRD = json.dumps({"docType": "prd", "title": "Forex Trading Trainer"})
DRAFT = "# Forex Trading Trainer\n\n## Problem Statement\n\n[TBD - see conversation]\n"


async def _attach(doc_store, make_ctx, tmp_path, body="# Trainer\n\n## Overview\n\nLocal models.\n"):
    path = tmp_path / "docs" / "prd" / "trainer.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    result = await doc_store.start_session_from_existing_document(str(path), make_ctx())
    return path, result.session_id


@pytest.mark.parametrize("phrase", ["done", "Done", "/done", "finish", "finished", "complete", "looks good", "that's it", "done!"])
def test_completion_phrases(phrase):
    assert is_completion_phrase(phrase)


@pytest.mark.parametrize("phrase", ["not done yet", "done with section 2, now add risks", "finish the timeline"])
def test_completion_phrase_must_be_whole_message(phrase):
    assert not is_completion_phrase(phrase)


def test_classification_accepts_fenced_json():
    raw = '```json\n{"docType": "design", "title": "Ledger Service"}\n```'
    assert parse_classification(raw, "whatever") == (DocType.DESIGN, "Ledger Service")


def test_classification_falls_back_on_garbage():
    doc_type, title = parse_classification("I think this is a PRD", "build a tool that helps traders backtest strategies quickly")
    assert doc_type is DocType.PRD
    assert title == "build a tool that helps traders backtest strategies"


def test_classification_unknown_type_defaults_to_prd():
    assert parse_classification('{"docType": "novel", "title": "X"}', "")[0] is DocType.PRD


@pytest.mark.parametrize("doc_type", [["spec"], {"kind": "spec"}, 7, None])
def test_classification_non_string_type_defaults_to_prd(doc_type):
    raw = json.dumps({"docType": doc_type, "title": "Ledger"})
    assert parse_classification(raw, "") == (DocType.PRD, "Ledger")


def test_refine_output_requires_ordered_delimiters():
    ok = parse_refine_output("---DOCUMENT---\n# Doc\n---QUESTION---\nWhat next?")
    assert ok.updated_content == "# Doc" and ok.next_question == "What next?"

    reversed_ = parse_refine_output("---QUESTION---\nWhat?\n---DOCUMENT---\n# Doc")
    assert reversed_.updated_content is None
    assert reversed_.next_question.startswith("---QUESTION---")


async def test_start_new_session_classifies_drafts_and_asks(doc_store, make_ctx, tmp_path):
    model = ScriptedModel(CLASSIFY_PRD, DRAFT, "Who are the primary users?")

    result = await doc_store.start_new_session("this will be a project for forex trading", make_ctx(model))

    expected = tmp_path / "docs" / "prd" / "forex-trading-trainer.md"
    assert model.calls == 3
    assert result.should_continue
    assert result.document_path == str(expected)
    assert expected.read_text() == DRAFT.strip()
    assert "## PRD Creator - New Product Requirements Document (PRD)" in result.response
    assert "`docs/prd/forex-trading-trainer.md`" in result.response
    assert "Who are the primary users?" in result.response
    session = doc_store.get_session(result.session_id)
    assert session.turn_count == 1 and session.agent_name == "prd-creator"


async def test_start_new_session_uses_fallback_title_on_bad_classification(doc_store, make_ctx, tmp_path):
    model = ScriptedModel("not json", DRAFT, "Question?")
    await doc_store.start_new_session("build a tool that helps traders backtest strategies quickly and cheaply", make_ctx(model))
    assert (tmp_path / "docs" / "prd" / "build-a-tool-that-helps-traders-backtest-strategies.md").exists()


async def test_forced_doc_type_skips_classification(doc_store, make_ctx, tmp_path):
    model = ScriptedModel("# Spec\n", "Which interfaces?")
    result = await doc_store.start_new_session("switch to a new spec document", make_ctx(model), forced_doc_type=DocType.SPEC)

    assert model.calls == 2
    assert result.document_path == str(tmp_path / "docs" / "spec" / "switch-to-a-new-spec-document.md")


async def test_model_failures_during_start_use_fallbacks(doc_store, make_ctx, tmp_path):
    model = ScriptedModel(RuntimeError("boom"), RuntimeError("boom"), RuntimeError("boom"))
    result = await doc_store.start_new_session("mobile banking app", make_ctx(model))

    assert result.should_continue
    assert FALLBACK_FIRST_QUESTION in result.response
    content = (tmp_path / "docs" / "prd" / "mobile-banking-app.md").read_text()
    assert content == "# mobile banking app\n\n*[Initial draft - language model unavailable]*\n"


async def test_start_without_model_returns_guidance(doc_store, make_ctx):
    result = await doc_store.start_new_session("anything", make_ctx())
    assert result.session_id == "" and not result.should_continue
    assert "No language model is available" in result.response
    assert doc_store.list_sessions() == []


async def test_attach_seeds_empty_document(doc_store, make_ctx, tmp_path):
    path, session_id = await _attach(doc_store, make_ctx, tmp_path, body="")
    assert path.read_text() == "# Trainer\n\n[Initial content pending refinement]\n"
    assert doc_store.get_session(session_id).doc_type is DocType.PRD


async def test_attach_without_model_asks_static_question(doc_store, make_ctx, tmp_path):
    path = tmp_path / "docs" / "design" / "ledger.md"
    path.parent.mkdir(parents=True)
    path.write_text("# Ledger\n")
    result = await doc_store.start_session_from_existing_document(str(path), make_ctx())

    assert NO_MODEL_FIRST_QUESTION in result.response
    assert "Solution Architect - Continuing Design Document" in result.response
    assert doc_store.get_session(result.session_id).doc_type is DocType.DESIGN


async def test_continue_writes_updated_document(doc_store, make_ctx, tmp_path):
    path, session_id = await _attach(doc_store, make_ctx, tmp_path)
    model = ScriptedModel("---DOCUMENT---\n# Trainer\n\n## Risks\n\nSlippage.\n---QUESTION---\nWhat leverage cap?")

    result = await doc_store.continue_session(session_id, "add slippage as a risk", make_ctx(model))

    assert path.read_text() == "# Trainer\n\n## Risks\n\nSlippage."
    assert "*Document updated* (`docs/prd/trainer.md`, turn 2)" in result.response
    assert "What leverage cap?" in result.response
    assert doc_store.get_session(session_id).turn_count == 2


async def test_continue_surfaces_raw_output_without_delimiters(doc_store, make_ctx, tmp_path):
    path, session_id = await _attach(doc_store, make_ctx, tmp_path)
    before = path.read_text()

    result = await doc_store.continue_session(session_id, "thoughts?", make_ctx(ScriptedModel("Which broker APIs?")))

    assert path.read_text() == before
    assert result.response.startswith("Which broker APIs?")
    assert "*Document updated*" not in result.response


async def test_continue_survives_model_failure(doc_store, make_ctx, tmp_path):
    path, session_id = await _attach(doc_store, make_ctx, tmp_path)
    before = path.read_text()

    result = await doc_store.continue_session(session_id, "add risks", make_ctx(ScriptedModel(TimeoutError("slow"))))

    assert result.should_continue
    assert FALLBACK_NEXT_QUESTION in result.response
    assert path.read_text() == before
    assert doc_store.has_session(session_id)
    assert doc_store.get_session(session_id).turn_count == 2


async def test_continue_without_model_keeps_document(doc_store, make_ctx, tmp_path):
    path, session_id = await _attach(doc_store, make_ctx, tmp_path)
    before = path.read_text()

    result = await doc_store.continue_session(session_id, "add risks", make_ctx())

    assert result.response.startswith("Got your feedback")
    assert path.read_text() == before


@pytest.mark.parametrize("phrase", ["done", "looks good", "/done"])
async def test_completion_ends_session(doc_store, make_ctx, tmp_path, phrase):
    _, session_id = await _attach(doc_store, make_ctx, tmp_path)
    model = ScriptedModel()

    result = await doc_store.continue_session(session_id, phrase, make_ctx(model))

    assert not result.should_continue
    assert "Session complete" in result.response
    assert "`docs/prd/trainer.md`" in result.response
    assert not doc_store.has_session(session_id)
    assert model.calls == 0


async def test_refine_prompt_truncates_long_documents(doc_store, make_ctx, tmp_path, config):
    body = "# Big\n\n" + "x" * (config.DOC_CONTEXT_MAX_CHARS + 500)
    _, session_id = await _attach(doc_store, make_ctx, tmp_path, body=body)
    model = ScriptedModel("What next?")

    await doc_store.continue_session(session_id, "tighten it", make_ctx(model))

    prompt = model.prompt_text()
    assert TRUNCATION_MARKER in prompt
    assert "x" * (config.DOC_CONTEXT_MAX_CHARS + 1) not in prompt


async def test_unknown_session_raises(doc_store, make_ctx):
    with pytest.raises(DocSessionNotFound):
        await doc_store.continue_session("docsess_missing", "hi", make_ctx())
