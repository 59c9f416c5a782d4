"""
Unit Tests for the Conversation Service

Tests the search heuristic, both reply paths, history persistence in the
context cache and session lifecycle.
"""

import pytest

from deepsearch.context_cache import ContextCache
from deepsearch.conversation import ConversationService, is_search_query
from deepsearch.dispatcher import SearchDispatcher
from deepsearch.kv_store import InMemoryTTLStore
from deepsearch.orchestrator import SearchPipeline
from fakes import FakeCompletionProvider, FakeSearchProvider


@pytest.fixture
def service(berlin_wall_results):
    llm = FakeCompletionProvider({
        "conversation": "Happy to help with that.",
        "synthesis": "It fell on 9 November 1989 [1].",
    })
    search = FakeSearchProvider(results=berlin_wall_results)
    pipeline = SearchPipeline(llm, search, dispatcher=SearchDispatcher(search, analyze_subqueries=False))
    return ConversationService(pipeline, ContextCache(InMemoryTTLStore()))


class TestIsSearchQuery:
    """Tests for the search heuristic."""

    @pytest.mark.parametrize("message", [
        "When did the Berlin Wall fall",
        "tell me about solar panels",
        "is it raining?",
        "/search rust async",
        "search: best laptops",
        "How to bake bread",
    ])
    def test_search_messages(self, message):
        """Test messages that should trigger a search."""
        assert is_search_query(message) is True

    @pytest.mark.parametrize("message", ["thanks!", "ok, sounds good", "hello there"])
    def test_chat_messages(self, message):
        """Test messages that should not trigger a search."""
        assert is_search_query(message) is False


class TestConversationService:
    """Tests for ConversationService."""

    def test_start_session_ids(self, service):
        """Test generated and explicit session ids."""
        generated = service.start_session()
        assert generated.startswith("session_")
        assert len(generated) == len("session_") + 16
        assert service.start_session("mine") == "mine"

    @pytest.mark.asyncio
    async def test_chat_reply_is_stored(self, service):
        """Test a non-search message uses a plain completion and lands in history."""
        session_id = service.start_session()
        reply = await service.send_message(session_id, "thanks!")

        assert reply["used_search"] is False
        assert reply["text"] == "Happy to help with that."
        assert reply["context_stored"] is True
        assert reply["is_error"] is False

        history = await service.get_history(session_id)
        assert [m["role"] for m in history] == ["user", "assistant"]
        assert history[0]["content"] == "thanks!"

    @pytest.mark.asyncio
    async def test_search_reply(self, service):
        """Test a question runs the pipeline and returns citations."""
        session_id = service.start_session()
        reply = await service.send_message(session_id, "When did the Berlin Wall fall?")

        assert reply["used_search"] is True
        assert reply["text"] == "It fell on 9 November 1989 [1]."
        assert len(reply["citations"]) == 2
        assert reply["thinking_process"]["progress"] == 100

        history = await service.get_history(session_id)
        assert history[-1]["citations"] == [c["url"] for c in reply["citations"]]

        session = await service.get_session(session_id)
        assert session["message_count"] == 2
        assert len(session["analysis_results"]) == 1

    @pytest.mark.asyncio
    async def test_enable_search_overrides_heuristic(self, service):
        """Test the explicit flag wins over the heuristic in both directions."""
        session_id = service.start_session()
        forced_off = await service.send_message(session_id, "What is the capital of France?", enable_search=False)
        forced_on = await service.send_message(session_id, "thanks", enable_search=True)

        assert forced_off["used_search"] is False
        assert forced_on["used_search"] is True
        assert len(await service.get_history(session_id)) == 4

    @pytest.mark.asyncio
    async def test_history_is_passed_to_completion(self, service):
        """Test earlier turns appear in the conversation prompt."""
        session_id = service.start_session()
        await service.send_message(session_id, "my name is Sam")
        await service.send_message(session_id, "thanks")

        llm = service.completion_provider
        assert "my name is Sam" in llm.calls[-1]["prompt"]

    @pytest.mark.asyncio
    async def test_completion_failure_is_reported(self, berlin_wall_results):
        """Test a dead completion provider gives an error-flagged reply."""
        search = FakeSearchProvider(results=berlin_wall_results)
        service = ConversationService(
            SearchPipeline(FakeCompletionProvider(), search),
            ContextCache(InMemoryTTLStore()),
        )
        reply = await service.send_message("s1", "thanks")

        assert reply["is_error"] is True
        assert reply["used_search"] is False
        assert len(await service.get_history("s1")) == 2

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        """Test history and session lookups for unknown ids."""
        assert await service.get_history("nope") is None
        assert await service.get_session("nope") is None
        assert await service.session_exists("nope") is False

    @pytest.mark.asyncio
    async def test_known_empty_session(self, service):
        """Test a started session without messages has empty history."""
        session_id = service.start_session()
        assert await service.get_history(session_id) == []
        assert (await service.get_session(session_id))["message_count"] == 0

    @pytest.mark.asyncio
    async def test_clear_session(self, service):
        """Test clearing removes cached context and bookkeeping."""
        session_id = service.start_session()
        await service.send_message(session_id, "thanks")

        assert await service.clear_session(session_id) is True
        assert await service.get_history(session_id) is None
        assert await service.clear_session(session_id) is False
