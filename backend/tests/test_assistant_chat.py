"""
Assistant chat endpoint: auth, validation, rate limiting, persistence and bookkeeping.
"""

import uuid

from httpx import AsyncClient

from app.core.config import settings
from app.db.models import AssistantRequest, CaseMemory, Message, MessageRole, SessionLog
from app.services.case_memory_service import case_memory_service
from app.services.chat_service import calculate_confidence

CHAT_MARKER = "RESPONSE RULES:"
AVO_REPLY = (
    "An AVO is an Apprehended Violence Order made under the Crimes (Domestic and Personal Violence) "
    "Act 2007, s 16 [CITATION 1]."
)


def legal_row(similarity=0.9):
    return {
        "id": str(uuid.uuid4()),
        "document_id": str(uuid.uuid4()),
        "section_id": str(uuid.uuid4()),
        "chunk_text": "A court may make an apprehended domestic violence order...",
        "metadata": {"normalized_citation": "Crimes (Domestic and Personal Violence) Act 2007 (NSW) s 16"},
        "title": "Crimes (Domestic and Personal Violence) Act 2007",
        "similarity": similarity,
    }


# =============================================================================
# Happy path
# =============================================================================

async def test_chat_answers_with_citations(client: AsyncClient, db, user_id, auth_headers, fake_llm, fake_vector_search):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)
    fake_vector_search.legal_rows = [legal_row()]

    response = await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["response"] == AVO_REPLY
    assert data["metadata"]["model_used"] in {"gpt-4o", "gpt-4o-mini"}
    assert data["metadata"]["legal_sources"] == 1
    assert data["metadata"]["current_stage"] == 1
    assert data["metadata"]["session_count"] == 1
    assert data["metadata"]["mode"] == "user"
    assert data["citations"][0]["index"] == 1
    assert data["citations"][0]["type"] == "legal_authority"
    assert response.headers["X-Correlation-ID"]

    system_prompt = fake_llm.calls_matching(CHAT_MARKER)[0]["messages"][0]["content"]
    assert "[CITATION 1] Crimes (Domestic and Personal Violence) Act 2007 (NSW) s 16" in system_prompt


async def test_chat_persists_turn_and_bookkeeping(client: AsyncClient, db, user_id, auth_headers, fake_llm, fake_vector_search):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)
    fake_vector_search.legal_rows = [legal_row()]

    await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)

    messages = db.query(Message).filter(Message.user_id == user_id).order_by(Message.created_at).all()
    assert [m.role for m in messages] == [MessageRole.user, MessageRole.assistant]
    assert messages[0].citations == []
    assert messages[1].citations[0]["type"] == "legal_authority"
    assert db.query(SessionLog).filter(SessionLog.user_id == user_id).one().event_type == "chat_turn"
    assert db.query(CaseMemory).filter(CaseMemory.user_id == user_id).one().session_count == 1
    assert db.query(AssistantRequest).count() == 1


async def test_stored_history_is_sent_on_the_next_turn(client: AsyncClient, auth_headers, fake_llm, fake_vector_search):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)

    await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)
    await client.post("/api/v1/assistant-chat", json={"prompt": "How do I apply?"}, headers=auth_headers)

    sent = fake_llm.calls_matching(CHAT_MARKER)[-1]["messages"]
    assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
    assert sent[1]["content"] == "What is an AVO?"
    assert sent[-1]["content"] == "How do I apply?"


async def test_supplied_messages_replace_stored_history(client: AsyncClient, auth_headers, fake_llm, fake_vector_search):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)

    response = await client.post(
        "/api/v1/assistant-chat",
        json={
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello, how can I help?"},
                {"role": "user", "content": "What is an AVO?"},
            ],
            "mode": "lawyer",
        },
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json()["metadata"]["mode"] == "lawyer"
    call = fake_llm.calls_matching(CHAT_MARKER)[0]
    assert [m["content"] for m in call["messages"][1:]] == ["Hi", "Hello, how can I help?", "What is an AVO?"]
    assert call["max_tokens"] == 1000


async def test_chat_falls_back_to_second_model(client: AsyncClient, auth_headers, fake_llm, fake_vector_search):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)
    fake_llm.failing_models.add("gpt-4o-mini")

    response = await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["metadata"]["model_used"] == "gpt-4o"


async def test_bookkeeping_failure_does_not_fail_the_turn(client: AsyncClient, db, user_id, auth_headers, fake_llm, fake_vector_search, monkeypatch):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)

    def broken(*args, **kwargs):
        raise RuntimeError("case memory unavailable")

    monkeypatch.setattr(case_memory_service, "record_session", broken)

    response = await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["response"] == AVO_REPLY
    assert db.query(Message).filter(Message.user_id == user_id).count() == 2
    assert db.query(SessionLog).count() == 0


# =============================================================================
# Rejections
# =============================================================================

async def test_missing_prompt_and_messages_is_rejected(client: AsyncClient, db, auth_headers, fake_llm):
    response = await client.post("/api/v1/assistant-chat", json={}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "Provide 'prompt' (string) or 'messages' (array)."
    assert db.query(AssistantRequest).count() == 0


async def test_missing_token_is_unauthorized(client: AsyncClient, fake_llm):
    response = await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"})

    assert response.status_code == 401
    assert response.json()["error"] == "No authorization header"


async def test_invalid_tokens_are_unauthorized(client: AsyncClient, user_id, fake_llm, token_for):
    for token in (
        token_for(user_id, secret="a-different-secret-of-similar-length-0000"),
        token_for(user_id, expires_in=-60),
        token_for(user_id, audience="someone-else"),
        token_for("not-a-uuid"),
    ):
        response = await client.post(
            "/api/v1/assistant-chat",
            json={"prompt": "What is an AVO?"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid user token"


async def test_rate_limit(client: AsyncClient, auth_headers, fake_llm, fake_vector_search, monkeypatch):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)
    monkeypatch.setattr(settings, "CHAT_RATE_LIMIT_PER_MINUTE", 2)

    statuses = []
    for _ in range(3):
        response = await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)
        statuses.append(response.status_code)

    assert statuses == [200, 200, 429]
    assert response.json()["error"].startswith("Rate limit exceeded")


async def test_rate_limit_is_per_user(client: AsyncClient, db, fake_llm, fake_vector_search, monkeypatch, token_for):
    fake_llm.on(CHAT_MARKER, AVO_REPLY)
    monkeypatch.setattr(settings, "CHAT_RATE_LIMIT_PER_MINUTE", 1)

    first = await client.post("/api/v1/assistant-chat", json={"prompt": "Hi"}, headers={"Authorization": f"Bearer {token_for(uuid.uuid4())}"})
    second = await client.post("/api/v1/assistant-chat", json={"prompt": "Hi"}, headers={"Authorization": f"Bearer {token_for(uuid.uuid4())}"})

    assert (first.status_code, second.status_code) == (200, 200)


async def test_all_models_failing_returns_500(client: AsyncClient, db, user_id, auth_headers, fake_llm, fake_vector_search):
    response = await client.post("/api/v1/assistant-chat", json={"prompt": "What is an AVO?"}, headers=auth_headers)

    assert response.status_code == 500
    assert response.json()["error"] == "Chat request failed"
    assert db.query(Message).filter(Message.user_id == user_id).count() == 0


# =============================================================================
# Confidence
# =============================================================================

def test_confidence_base_score():
    assert calculate_confidence("Talk to a support service.", 0, 0) == 0.5


def test_confidence_all_signals_capped():
    content = "Under the Crimes Act, section 13 applies."
    assert calculate_confidence(content, legal_sources=2, evidence_sources=1) == 1.0


def test_confidence_partial_signals():
    assert calculate_confidence("See s13.", legal_sources=1, evidence_sources=0) == 0.85
