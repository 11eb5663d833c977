import json

import pytest

from support_agent.services.knowledge_base import KnowledgeBase


@pytest.fixture
def knowledge_dir(tmp_path):
    (tmp_path / "faq.json").write_text(
        json.dumps(
            {
                "account": [
                    {"question": "How do I reset my password?", "answer": "Use the reset link."},
                    {"question": "How do I delete my account?", "answer": "Contact support."},
                ]
            }
        )
    )
    (tmp_path / "policies.json").write_text(
        json.dumps({"refund_policy": {"summary": "Refunds within 30 days of signup."}})
    )
    return tmp_path


@pytest.mark.asyncio
async def test_search_ranks_by_term_relevance(knowledge_dir):
    kb = KnowledgeBase(knowledge_dir)

    results = await kb.search("reset password")

    assert [result.category for result in results] == ["faq"]
    top = results[0].items[0]
    assert top.path == "account[0].question"
    assert top.relevance == 1.0


@pytest.mark.asyncio
async def test_search_limited_to_category(knowledge_dir):
    kb = KnowledgeBase(knowledge_dir)

    results = await kb.search("refunds account signup", category="policies")

    assert [result.category for result in results] == ["policies"]


@pytest.mark.asyncio
async def test_short_terms_are_ignored(knowledge_dir):
    assert await KnowledgeBase(knowledge_dir).search("a an to") == []


@pytest.mark.asyncio
async def test_bad_file_is_skipped(knowledge_dir):
    (knowledge_dir / "broken.json").write_text("{not json")

    knowledge = await KnowledgeBase(knowledge_dir).get_knowledge()

    assert set(knowledge) == {"faq", "policies"}


@pytest.mark.asyncio
async def test_configured_files_only(knowledge_dir):
    knowledge = await KnowledgeBase(knowledge_dir, files=["policies.json"]).get_knowledge()

    assert set(knowledge) == {"policies"}


@pytest.mark.asyncio
async def test_cache_expires_after_an_hour(knowledge_dir):
    now = [0.0]
    kb = KnowledgeBase(knowledge_dir, clock=lambda: now[0])
    await kb.get_knowledge()

    (knowledge_dir / "new.json").write_text(json.dumps({"tip": "hello"}))
    now[0] = 1800.0
    assert "new" not in await kb.get_knowledge()

    now[0] = 3601.0
    assert "new" in await kb.get_knowledge()


@pytest.mark.asyncio
async def test_missing_directory_yields_nothing(tmp_path):
    kb = KnowledgeBase(tmp_path / "absent")

    assert await kb.search("password") == []
