"""
MCP stdio server for medctx: document search tools for chat models.

Exposes the session's term search (``searchDocuments``) and semantic
search (``searchContext``) as MCP tools.

Usage:
    medctx mcp corpus.json          # stdio server (via CLI)

All session calls are serialized through a single asyncio.Lock.
"""

import asyncio
import logging
from typing import Annotated, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .errors import AllProvidersFailed
from .session import ContextSession
from .term_search import format_search_results
from .types import SearchFilter

logger = logging.getLogger(__name__)

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)

_TERMS_DESCRIPTION = (
    "Array of specific medical terms in ENGLISH ONLY that exist in document "
    "metadata. IMPORTANT: Always provide medical terms in English. "
    "TEMPORAL: {temporal} | MEDICAL: \"blood\", \"glucose\", \"cholesterol\", "
    "\"heart\", \"cardiac\", \"ecg\", \"x-ray\", \"mri\", \"ct\", \"ultrasound\", "
    "\"prescription\", \"medication\", \"surgery\", \"procedure\" | "
    "ICD-10 and LOINC codes are also matched."
)


# ---------------------------------------------------------------------------
# Tool bodies (session passed explicitly)
# ---------------------------------------------------------------------------

async def search_documents_tool(
    session: ContextSession,
    terms: list[str],
    document_types: Optional[list[str]] = None,
    include_content: bool = False,
    limit: Optional[int] = None,
    threshold: Optional[float] = None,
) -> str:
    """Run the three-stage term search and render the result text."""
    params: dict = {"terms": terms, "includeContent": include_content}
    if document_types:
        params["documentTypes"] = document_types
    if limit is not None:
        params["limit"] = limit
    if threshold is not None:
        params["threshold"] = threshold
    payload = session.search_documents(params)
    return format_search_results(payload)


async def search_context_tool(
    session: ContextSession,
    query: str,
    document_types: Optional[list[str]] = None,
    tags: Optional[list[str]] = None,
    limit: int = 5,
) -> str:
    """Semantic search over the loaded embeddings, rendered one line per hit."""
    filters = SearchFilter(
        document_types=tuple(document_types) if document_types else None,
        tags=tuple(tags) if tags else None,
    )
    try:
        results = await asyncio.to_thread(
            session.search_text, query, filters=filters, max_results=limit,
        )
    except AllProvidersFailed as e:
        return f"Error: {e}"
    if not results:
        return "No matching context."
    lines = []
    for result in results:
        meta = result.metadata
        lines.append(
            f"- {result.document_id} ({meta.document_type}, {meta.date[:10]}) "
            f"[{result.relevance_score:.2f}] {result.excerpt}"
        )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

def create_server(session: ContextSession) -> FastMCP:
    """Build a FastMCP server whose tools serve ``session``."""
    server = FastMCP(
        "medctx",
        instructions=(
            "Search the patient's medical documents. "
            "Use searchDocuments with standardized English medical terms, "
            "optionally with a temporal term such as 'latest'."
        ),
    )
    lock = asyncio.Lock()
    temporal = ", ".join(f'"{t}"' for t in session.config.term_search.temporal_terms)

    @server.tool(
        name="searchDocuments",
        description=(
            "Search patient medical documents by matching medical terms. "
            "Documents contain standardized medical terms arrays for precise matching."
        ),
        annotations=_READ_ONLY,
    )
    async def search_documents(
        terms: Annotated[list[str], Field(
            description=_TERMS_DESCRIPTION.format(temporal=temporal),
        )],
        documentTypes: Annotated[Optional[list[str]], Field(
            description="Filter by document categories (metadata.category), e.g. \"laboratory\".",
        )] = None,
        includeContent: Annotated[bool, Field(
            description="Include a content preview for highly relevant results.",
        )] = False,
        limit: Annotated[Optional[int], Field(
            description="Maximum number of documents to return (default 10).",
        )] = None,
        threshold: Annotated[Optional[float], Field(
            description="Minimum relevance between 0 and 1 (default 0.6).",
        )] = None,
    ) -> str:
        async with lock:
            return await search_documents_tool(
                session, terms, documentTypes, includeContent, limit, threshold,
            )

    @server.tool(
        name="searchContext",
        description=(
            "Semantic search over the patient's documents by natural language query. "
            "Returns the closest documents with relevance scores."
        ),
        annotations=_READ_ONLY,
    )
    async def search_context(
        query: Annotated[str, Field(description="Natural language search query.")],
        documentTypes: Annotated[Optional[list[str]], Field(
            description="Only documents of these types.",
        )] = None,
        tags: Annotated[Optional[list[str]], Field(
            description="Only documents with at least one of these tags.",
        )] = None,
        limit: Annotated[int, Field(description="Maximum results (default 5).")] = 5,
    ) -> str:
        async with lock:
            return await search_context_tool(session, query, documentTypes, tags, limit)

    return server


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def serve(session: ContextSession) -> None:
    """Run the MCP stdio server until stdin closes."""
    import os
    import signal
    # The stdin reader shields its blocking readline from cancellation,
    # so the first Ctrl+C would otherwise hang
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))

    logger.info("Starting MCP server (%d embeddings loaded)", len(session.store))
    create_server(session).run(transport="stdio")
