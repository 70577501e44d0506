"""
Tests for the MCP tool bodies and server construction.
"""

from unittest.mock import patch

import pytest

from medctx.mcp import create_server, search_context_tool, search_documents_tool
from medctx.protocol import InMemoryDocumentStore
from medctx.providers.base import ProviderRegistry
from medctx.session import ContextSession


@pytest.fixture
def session(context_config, embedded_corpus, registry, now):
    s = ContextSession(
        context_config,
        documents=InMemoryDocumentStore(embedded_corpus),
        registry=registry,
        now=now,
    )
    yield s
    s.close()


class TestSearchDocumentsTool:

    @pytest.mark.asyncio
    async def test_renders_matches(self, session):
        text = await search_documents_tool(session, ["latest", "heart"], ["cardiology"])
        assert text.startswith("Found 1 relevant documents:")
        assert "**ECG Results**" in text
        assert "temporal:latest" in text

    @pytest.mark.asyncio
    async def test_include_content(self, session):
        text = await search_documents_tool(
            session, ["glucose", "cholesterol"], ["laboratory"], include_content=True,
        )
        assert "Preview: Fasting glucose and lipid panel." in text

    @pytest.mark.asyncio
    async def test_limit(self, session):
        text = await search_documents_tool(session, ["zzz"], limit=2)
        assert text.startswith("Found 2 relevant documents:")

    @pytest.mark.asyncio
    async def test_empty_terms_is_error_text(self, session):
        text = await search_documents_tool(session, [])
        assert text.startswith("Error:")

    @pytest.mark.asyncio
    async def test_no_results(self, session):
        text = await search_documents_tool(session, ["blood"], ["dermatology"])
        assert text.startswith("No documents found matching the search terms: blood.")

    @pytest.mark.asyncio
    async def test_threshold_passed_to_search(self, session):
        with patch.object(session, "search_documents", wraps=session.search_documents) as spy:
            await search_documents_tool(session, ["heart"], threshold=0.8)
        assert spy.call_args.args[0]["threshold"] == 0.8


class TestSearchContextTool:

    @pytest.mark.asyncio
    async def test_semantic_hit(self, session):
        await session.load()
        text = await search_context_tool(session, "ECG shows normal sinus rhythm")
        first = text.splitlines()[0]
        assert first.startswith("- doc4 (cardiology, 2024-01-25)")

    @pytest.mark.asyncio
    async def test_filters(self, session):
        await session.load()
        text = await search_context_tool(session, "blood", document_types=["imaging"])
        assert [line.split()[1] for line in text.splitlines()] == ["doc2"]

    @pytest.mark.asyncio
    async def test_empty_store(self, session):
        assert await search_context_tool(session, "anything") == "No matching context."

    @pytest.mark.asyncio
    async def test_provider_failure_is_error_text(self, context_config, provider_factory):
        registry = ProviderRegistry(timeout=None)
        registry.register("bad", provider_factory("bad", fail=True))
        registry.set_primary("bad")
        with ContextSession(context_config, registry=registry) as session:
            text = await search_context_tool(session, "anything")
        assert text.startswith("Error:")


class TestServer:

    @pytest.mark.asyncio
    async def test_tools_registered(self, session):
        server = create_server(session)
        tools = {tool.name: tool for tool in await server.list_tools()}
        assert set(tools) == {"searchDocuments", "searchContext"}
        assert tools["searchDocuments"].annotations.readOnlyHint is True
        assert "latest" in str(tools["searchDocuments"].inputSchema)
        assert "threshold" in tools["searchDocuments"].inputSchema["properties"]
