import asyncio
import os
from typing import Annotated

import typer

from mini_lightrag.config import settings
from mini_lightrag.core.errors import MiniLightRAGError, StoreError
from mini_lightrag.core.models import SearchFilters, SearchOptions, SearchResponse
from mini_lightrag.services.orchestrator import Orchestrator, build_orchestrator

app = typer.Typer(
    help="mini-lightrag: Local Hybrid Vector + Graph Retrieval Engine",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    if value:
        from mini_lightrag import __version__

        typer.echo(f"mini-lightrag version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config_file: Annotated[
        str, typer.Option("--config-file", "-c", help="Path to config.yaml file.")
    ] = "config.yaml",
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show the version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """mini-lightrag: Configurable Hybrid Retrieval Engine."""
    from mini_lightrag.config import load_settings
    from mini_lightrag.logger import configure_logger

    os.environ["MINI_LIGHTRAG_CONFIG_FILE"] = config_file

    # Dynamically update the current process global settings singleton
    new_settings = load_settings(config_file)
    settings.log_level = new_settings.log_level
    settings.log_serialize = new_settings.log_serialize
    settings.database = new_settings.database
    settings.embedding = new_settings.embedding
    settings.chunking = new_settings.chunking
    settings.indexing = new_settings.indexing
    settings.search = new_settings.search
    settings.graph = new_settings.graph

    configure_logger(settings.log_level, settings.log_serialize)


def _open_orchestrator() -> Orchestrator:
    """Builds and initializes the engine, turning startup failures into a clean exit."""
    try:
        orchestrator = build_orchestrator(settings)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    try:
        orchestrator.initialize()
    except StoreError as e:
        if "Schema mismatch" in str(e):
            typer.echo(f"\n[!] Database Error: {e}", err=True)
            raise typer.Exit(code=1) from e
        raise
    except MiniLightRAGError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    return orchestrator


def _print_response(orchestrator: Orchestrator, response: SearchResponse) -> None:
    if not response.results:
        typer.echo("No results found")
        return

    meta = response.metadata
    typer.echo(
        f"Top {len(response.results)} of {meta.total_found} results "
        f"({meta.vector_matches} vector, {meta.graph_expansions} via graph, "
        f"{meta.processing_time_ms:.0f}ms)"
    )
    for citation, result in zip(
        orchestrator.generate_citations(response), response.results, strict=True
    ):
        typer.echo(
            f"\n[{citation.context}] {citation.path}:{citation.start_line}-{citation.end_line}"
        )
        typer.echo(f"  why: {result.explanation.why_relevant}")
        typer.echo(f'  --> "{result.snippet.replace(chr(10), " ")}"')


@app.command()
def index(
    path: Annotated[str, typer.Argument(help="Workspace directory to index.")] = ".",
    force: Annotated[
        bool,
        typer.Option(
            "--force", "-f", help="Clear the store and re-index every file, ignoring hashes."
        ),
    ] = False,
) -> None:
    """Incrementally indexes a workspace into the vector store and similarity graph."""
    orchestrator = _open_orchestrator()
    try:
        stats = asyncio.run(orchestrator.index_workspace(path, force=force))
    except MiniLightRAGError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        orchestrator.close()

    typer.echo(
        f"Indexed {stats.files_scanned} files in {stats.duration_ms:.0f}ms: "
        f"{stats.files_added} added, {stats.files_modified} modified, "
        f"{stats.files_unchanged} unchanged, {stats.files_removed} removed"
    )
    typer.echo(
        f"Chunks: {stats.chunks_added} added, {stats.chunks_tombstoned} tombstoned, "
        f"{stats.chunks_removed} removed | Graph: {stats.nodes} nodes, {stats.edges} edges"
    )
    for error in stats.errors:
        typer.echo(f"  [error] {error.path}: {error.message}", err=True)
    if stats.cancelled:
        typer.echo("Indexing was cancelled before completion.", err=True)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Natural-language or code query.")],
    limit: Annotated[
        int, typer.Option("--limit", "-l", help="Maximum number of search results to return.")
    ] = 10,
    hops: Annotated[
        int | None, typer.Option("--hops", help="Graph expansion depth (0 disables expansion).")
    ] = None,
    min_score: Annotated[
        float | None, typer.Option("--min-score", help="Drop results scoring below this value.")
    ] = None,
    language: Annotated[
        list[str] | None,
        typer.Option("--language", "-L", help="Restrict results to a language. Repeatable."),
    ] = None,
    path_filter: Annotated[
        list[str] | None,
        typer.Option("--path", "-p", help="Path prefix or glob to restrict results. Repeatable."),
    ] = None,
    as_json: Annotated[
        bool, typer.Option("--json", help="Print the full response as JSON.")
    ] = False,
) -> None:
    """Searches the index using hybrid retrieval (Vector + Graph + Freshness)."""
    orchestrator = _open_orchestrator()
    try:
        options = SearchOptions(max_results=limit, expand_hops=hops, min_score=min_score)
        filters = SearchFilters(languages=language or [], paths=path_filter or [])
        response = asyncio.run(orchestrator.search(query, options=options, filters=filters))

        if as_json:
            typer.echo(response.model_dump_json(indent=2))
        else:
            _print_response(orchestrator, response)
    except MiniLightRAGError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        orchestrator.close()


@app.command()
def stats() -> None:
    """Shows database counts, cache usage and graph structure."""
    orchestrator = _open_orchestrator()
    try:
        system = orchestrator.get_system_stats()
        analysis = orchestrator.analyze_graph()
    except MiniLightRAGError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        orchestrator.close()

    db = system.database
    typer.echo(
        f"Chunks: {db.chunks} ({db.active_chunks} active, {db.tombstoned_chunks} tombstoned)"
    )
    typer.echo(
        f"Graph: {analysis.total_nodes} nodes, {analysis.total_edges} edges, "
        f"avg degree {analysis.avg_degree:.2f}, {analysis.connected_components} components"
    )
    typer.echo(f"Ready: {system.ready}")


@app.command()
def graph(
    related: Annotated[
        str | None,
        typer.Option("--related", "-r", help="List nodes connected to this node id."),
    ] = None,
    hops: Annotated[int, typer.Option("--hops", help="Traversal depth for --related.")] = 1,
    path_to: Annotated[
        str | None,
        typer.Option("--path-to", help="With --related, print the shortest path to this node."),
    ] = None,
) -> None:
    """Inspects the chunk similarity graph."""
    orchestrator = _open_orchestrator()
    try:
        if related is None:
            analysis = orchestrator.analyze_graph()
            typer.echo(
                f"Nodes: {analysis.total_nodes} | Edges: {analysis.total_edges} | "
                f"Avg degree: {analysis.avg_degree:.2f} | "
                f"Components: {analysis.connected_components}"
            )
            return

        if path_to is not None:
            path = orchestrator.graph.find_path(related, path_to)
            if not path:
                typer.echo(f"No path from {related} to {path_to}")
            else:
                typer.echo(" -> ".join(path))
            return

        nodes = orchestrator.graph.find_related_nodes(related, max_hops=hops)
        if not nodes:
            typer.echo(f"No nodes related to {related}")
        for node in nodes:
            typer.echo(f"{node.id}  [{node.type.value}] {node.label}")
    except MiniLightRAGError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        orchestrator.close()


@app.command()
def purge() -> None:
    """Physically deletes chunks tombstoned longer than the retention window."""
    orchestrator = _open_orchestrator()
    try:
        purged = asyncio.run(orchestrator.purge_tombstones())
    except MiniLightRAGError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        orchestrator.close()
    typer.echo(f"Purged {purged} tombstoned chunks")


if __name__ == "__main__":
    app()
