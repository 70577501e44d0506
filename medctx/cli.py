"""
CLI interface for document context search.

Usage:
    medctx search-documents corpus.json -t latest -t heart
    medctx similar corpus.json "cholesterol trend"
    medctx embed corpus.json
    medctx stats corpus.json
    medctx mcp corpus.json
"""

import asyncio
import base64
import binascii
import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .config import config_to_dict, get_config_dir, load_or_create_config
from .errors import AllProvidersFailed, ContextError, DocumentNotFound
from .logging_config import configure_quiet_mode, enable_debug_mode
from .protocol import InMemoryDocumentStore
from .session import ContextSession
from .term_search import format_search_results
from .types import DateRange, SearchFilter, SearchResult


# Configure quiet mode by default (suppress verbose library output)
# Set MEDCTX_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MEDCTX_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"medctx {version('medctx')}")
        raise typer.Exit()


app = typer.Typer(
    name="medctx",
    help="Semantic context search over medical documents.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Semantic context search over medical documents."""


# -----------------------------------------------------------------------------
# Common options
# -----------------------------------------------------------------------------

CorpusArgument = Annotated[
    Path,
    typer.Argument(
        help="JSON file holding an array of documents",
        exists=True,
        dir_okay=False,
    ),
]

ConfigDirOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config-dir", "-c",
        envvar="MEDCTX_CONFIG_DIR",
        help="Config directory (default: ~/.medctx/)",
    ),
]

KeyOption = Annotated[
    Optional[str],
    typer.Option(
        "--key",
        envvar="MEDCTX_KEY",
        help="Base64 AES-256 key for encrypted embeddings",
    ),
]

LimitOption = Annotated[
    int,
    typer.Option("--limit", "-n", help="Maximum results"),
]

JsonOption = Annotated[
    bool,
    typer.Option("--json", "-j", help="Output as JSON"),
]


def _read_corpus(path: Path) -> list[dict]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise typer.BadParameter(f"Cannot read corpus {path}: {e}") from e
    if isinstance(data, dict) and isinstance(data.get("documents"), list):
        data = data["documents"]
    if not isinstance(data, list):
        raise typer.BadParameter(f"Corpus {path} must be a JSON array of documents")
    return [doc for doc in data if isinstance(doc, dict)]


def _decode_key(key: Optional[str]) -> Optional[bytes]:
    if not key:
        return None
    try:
        raw = base64.b64decode(key, validate=True)
    except binascii.Error as e:
        raise typer.BadParameter(f"--key is not valid base64: {e}") from e
    if len(raw) != 32:
        raise typer.BadParameter(f"--key must decode to 32 bytes, got {len(raw)}")
    return raw


def _open_session(corpus: Path, config_dir: Optional[Path]) -> ContextSession:
    config = load_or_create_config(config_dir.resolve() if config_dir else None)
    documents = InMemoryDocumentStore(_read_corpus(corpus))
    return ContextSession(config, documents=documents, ops_log=True)


def _load(session: ContextSession, key: Optional[str]) -> None:
    report = asyncio.run(session.load(_decode_key(key)))
    if report.failed:
        typer.echo(f"Warning: {report.failed} embeddings could not be loaded", err=True)


def _write_corpus(source: Path, target: Path, documents: list[dict]) -> None:
    # Keep the {"documents": [...]} wrapper and its other keys when present
    data = json.loads(source.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data["documents"] = documents
    else:
        data = documents
    target.write_text(json.dumps(data, indent=2), encoding="utf-8")


def _result_line(result: SearchResult) -> str:
    meta = result.metadata
    return (
        f"{result.document_id}  {meta.date[:10]}  {meta.document_type:<12} "
        f"{result.relevance_score:.3f}  {result.excerpt[:80]}"
    )


def _result_dict(result: SearchResult) -> dict:
    meta = result.metadata
    data = {
        "documentId": result.document_id,
        "similarity": result.similarity,
        "relevanceScore": result.relevance_score,
        "documentType": meta.document_type,
        "date": meta.date,
        "tags": sorted(meta.tags),
        "excerpt": result.excerpt,
    }
    if result.keyword_score is not None:
        data["keywordScore"] = result.keyword_score
    return data


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command("search-documents")
def search_documents_cmd(
    corpus: CorpusArgument,
    terms: Annotated[list[str], typer.Option(
        "--term", "-t",
        help="Search term (repeatable); temporal terms: latest, recent, historical",
    )],
    document_type: Annotated[Optional[list[str]], typer.Option(
        "--type",
        help="Only documents of this category (repeatable)",
    )] = None,
    limit: LimitOption = 10,
    threshold: Annotated[Optional[float], typer.Option(
        "--threshold",
        help="Minimum relevance (enforced only when enabled in config)",
    )] = None,
    include_content: Annotated[bool, typer.Option(
        "--include-content",
        help="Include content previews for highly relevant documents",
    )] = False,
    output_json: JsonOption = False,
    config_dir: ConfigDirOption = None,
):
    """
    Three-stage term search over document metadata.

    \b
    Examples:
        medctx search-documents docs.json -t glucose
        medctx search-documents docs.json -t latest -t heart --type cardiology
    """
    params: dict = {"terms": terms, "limit": limit, "includeContent": include_content}
    if document_type:
        params["documentTypes"] = document_type
    if threshold is not None:
        params["threshold"] = threshold

    with _open_session(corpus, config_dir) as session:
        payload = session.search_documents(params)

    if output_json:
        typer.echo(json.dumps(payload, indent=2))
    else:
        typer.echo(format_search_results(payload))
    if payload.get("error"):
        raise typer.Exit(1)


@app.command()
def similar(
    corpus: CorpusArgument,
    query: Annotated[str, typer.Argument(
        help="Query text, or a document ID with --document",
    )],
    document: Annotated[bool, typer.Option(
        "--document", "-d",
        help="Treat QUERY as a document ID and find documents like it",
    )] = False,
    limit: LimitOption = 10,
    document_type: Annotated[Optional[list[str]], typer.Option(
        "--type", help="Only documents of this type (repeatable)",
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", help="Only documents with this tag (repeatable)",
    )] = None,
    since: Annotated[Optional[str], typer.Option(
        "--since", help="Only documents dated on or after this ISO date",
    )] = None,
    until: Annotated[Optional[str], typer.Option(
        "--until", help="Only documents dated on or before this ISO date",
    )] = None,
    threshold: Annotated[Optional[float], typer.Option(
        "--threshold", help="Minimum cosine similarity",
    )] = None,
    decay: Annotated[bool, typer.Option(
        "--decay/--no-decay", help="Down-weight older documents",
    )] = True,
    key: KeyOption = None,
    output_json: JsonOption = False,
    config_dir: ConfigDirOption = None,
):
    """Semantic search over the embeddings carried by a corpus."""
    date_range = None
    if since or until:
        date_range = DateRange(since or "0001-01-01", until or "9999-12-31")
    filters = SearchFilter(
        document_types=tuple(document_type) if document_type else None,
        date_range=date_range,
        tags=tuple(tag) if tag else None,
    )

    with _open_session(corpus, config_dir) as session:
        _load(session, key)
        try:
            if document:
                results = session.find_similar(
                    query, filters=filters, threshold=threshold, max_results=limit,
                    time_decay=session.search.default_decay() if decay else None,
                )
            else:
                results = session.search_text(
                    query, filters=filters, threshold=threshold,
                    max_results=limit, decay=decay,
                )
        except (AllProvidersFailed, DocumentNotFound) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

    if output_json:
        typer.echo(json.dumps([_result_dict(r) for r in results], indent=2))
    elif not results:
        typer.echo("No matching documents.")
    else:
        for result in results:
            typer.echo(_result_line(result))


@app.command()
def embed(
    corpus: CorpusArgument,
    output: Annotated[Optional[Path], typer.Option(
        "--output", "-o",
        help="Write the updated corpus here (default: overwrite CORPUS)",
        dir_okay=False,
    )] = None,
    force: Annotated[bool, typer.Option(
        "--force", help="Regenerate embeddings that already exist",
    )] = False,
    key: KeyOption = None,
    config_dir: ConfigDirOption = None,
):
    """
    Generate embeddings for documents that lack them.

    With --key the vectors are stored encrypted (embedding_vector),
    otherwise as plain embedding lists.
    """
    def _progress(completed: int, total: int) -> None:
        typer.echo(f"Embedded {completed}/{total}", err=True)

    with _open_session(corpus, config_dir) as session:
        report = asyncio.run(session.generate_embeddings(
            _decode_key(key), force=force, on_progress=_progress,
        ))
        documents = session.documents.list_documents()

    _write_corpus(corpus, output or corpus, documents)
    typer.echo(
        f"Generated {len(report.generated)} embeddings "
        f"({report.failed} failed, {report.skipped} skipped)"
    )
    if report.failed:
        raise typer.Exit(1)


@app.command()
def stats(
    corpus: CorpusArgument,
    key: KeyOption = None,
    config_dir: ConfigDirOption = None,
):
    """Load a corpus and show store statistics."""
    with _open_session(corpus, config_dir) as session:
        _load(session, key)
        typer.echo(json.dumps(session.stats(), indent=2))


@app.command()
def config(
    config_dir: ConfigDirOption = None,
):
    """Show configuration (creating it with defaults on first use)."""
    cfg = load_or_create_config(config_dir.resolve() if config_dir else get_config_dir())
    data = config_to_dict(cfg)
    data["file"] = str(cfg.config_path)
    typer.echo(json.dumps(data, indent=2))


@app.command()
def mcp(
    corpus: CorpusArgument,
    key: KeyOption = None,
    config_dir: ConfigDirOption = None,
):
    """Start MCP stdio server exposing searchDocuments for a corpus."""
    from .mcp import serve
    session = _open_session(corpus, config_dir)
    try:
        _load(session, key)
        serve(session)
    finally:
        session.close()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except ContextError as e:
        typer.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="medctx CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
