from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .config import Settings
from .errors import DocGraphError
from .graph import Graph
from .index.build import build_embeddings_service
from .index.cache import RedisEmbeddingCache
from .index.embedder import HostedEmbeddingProvider, LocalEmbeddingProvider
from .logging_setup import configure_logging
from .retrieval import ContextRetriever, TokenBudget, TraversalOptions, default_registry


app = typer.Typer(add_completion=False, help="docgraph: semantic edges and bounded context retrieval over document graphs.")
console = Console()


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
):
    configure_logging(log_level or Settings().log_level)


def _load_graph(path: Path) -> Graph:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Graph.deserialize(data)
    except (ValueError, KeyError, DocGraphError) as e:
        console.print(f"Could not load graph from {path}: {e}", style="red", markup=False)
        raise typer.Exit(code=2)


def _preview(text: str, n: int = 120) -> str:
    t = " ".join(text.split())
    return t if len(t) <= n else t[:n].rstrip() + "..."


@app.command()
def embed(
    graph_path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False, help="Serialized graph JSON"),
    out: Path | None = typer.Option(None, "--out", help="Where to write the graph (default: overwrite input)"),
    semantic: bool = typer.Option(True, "--semantic/--no-semantic", help="Also generate semantic edges"),
    threshold: float | None = typer.Option(None, help="Similarity threshold for semantic edges"),
    max_edges: int | None = typer.Option(None, "--max-edges", help="Max semantic edges per node"),
):
    """Embed node text, link similar nodes, and write the graph back out."""
    settings = Settings()
    graph = _load_graph(graph_path)
    service = build_embeddings_service(settings)
    try:
        report = service.generate_graph_embeddings(graph)
        edges = []
        if semantic and settings.semantic_edges_enabled:
            edges = service.generate_semantic_edges(graph, threshold=threshold, max_edges_per_node=max_edges)
    except DocGraphError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1)
    finally:
        service.close()

    target = out or graph_path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(graph.serialize(), ensure_ascii=False, indent=2), encoding="utf-8")

    console.print(f"Embedded: {report.embedded} (cached: {report.cached}, skipped: {report.skipped})")
    console.print(f"Semantic edges: {len(edges)}")
    console.print(f"Wrote {target}")


@app.command()
def search(
    graph_path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False),
    query: str = typer.Argument(...),
    k: int = typer.Option(10, "-k", help="Top-k nodes to show"),
    threshold: float = typer.Option(0.0, help="Minimum similarity"),
    node_type: list[str] | None = typer.Option(None, "--type", help="Restrict to node type (repeatable)"),
):
    """Semantic search over a graph's nodes."""
    graph = _load_graph(graph_path)
    service = build_embeddings_service(Settings())
    try:
        service.generate_graph_embeddings(graph)
        res = service.semantic_search(graph, query, top_k=k, threshold=threshold, node_types=node_type or None)
    except DocGraphError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1)
    finally:
        service.close()

    table = Table(title=f"Top {k} nodes ({res.execution_time_ms:.1f} ms)")
    table.add_column("#", justify="right", width=4)
    table.add_column("score", justify="right", width=8)
    table.add_column("node")
    table.add_column("type")
    table.add_column("page", justify="right")
    table.add_column("preview")
    for i, r in enumerate(res.results, start=1):
        m = r.metadata
        table.add_row(
            Text(str(i)),
            Text(f"{r.score:.3f}"),
            Text(m.node_id or r.id),
            Text(m.type or ""),
            Text(str(m.page) if m.page is not None else ""),
            Text(_preview(m.content)),
        )
    console.print(table)


@app.command()
def related(
    graph_path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False),
    node_id: str = typer.Argument(...),
    depth: int = typer.Option(2, help="Traversal depth (1-3)"),
    max_nodes: int = typer.Option(10, "--max-nodes", help="Max neighbors (1-20)"),
    node_type: list[str] | None = typer.Option(None, "--type", help="Only return these node types"),
    edge_type: list[str] | None = typer.Option(None, "--edge-type", help="Only follow these edge types"),
    direction: str = typer.Option("both", help="both, outgoing or incoming"),
    max_tokens: int = typer.Option(8000, "--max-tokens"),
    used_tokens: int = typer.Option(0, "--used-tokens", help="Tokens already spent"),
    reserve_tokens: int = typer.Option(1000, "--reserve-tokens"),
    fmt: str | None = typer.Option(None, "--format", help="Also render context: structured, narrative or compact"),
):
    """Bounded context retrieval around one node."""
    graph = _load_graph(graph_path)
    retriever = ContextRetriever()
    budget = TokenBudget(max_tokens=max_tokens, current_tokens=used_tokens, reserve_tokens=reserve_tokens)
    try:
        ctx = retriever.get_related_node(
            graph,
            node_id,
            TraversalOptions(
                max_depth=depth,
                max_nodes=max_nodes,
                node_types=tuple(node_type) if node_type else None,
                edge_types=tuple(edge_type) if edge_type else None,
                direction=direction,
            ),
            budget=budget,
        )
    except (DocGraphError, ValueError) as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1)

    table = Table(title=f"{ctx.node.id} ({ctx.node.type}): {len(ctx.neighbors)} related")
    table.add_column("node")
    table.add_column("type")
    table.add_column("page", justify="right")
    table.add_column("preview")
    for n in ctx.neighbors:
        table.add_row(Text(n.id), Text(n.type), Text(str(n.position.page)), Text(_preview(n.content)))
    console.print(table)
    console.print(f"path: {' -> '.join(ctx.traversal_path)} (depth {ctx.traversal_depth})", markup=False)
    console.print(f"estimated tokens: {ctx.total_estimated_tokens}")

    if fmt:
        try:
            formatted = retriever.format_context(ctx, budget, format=fmt)
        except ValueError as e:
            console.print(str(e), style="red", markup=False)
            raise typer.Exit(code=1)
        console.print("\n" + "=" * 80, markup=False)
        console.print(formatted.text, markup=False)
        console.print(f"\n({formatted.used_tokens} tokens, {len(formatted.node_ids)} nodes)", markup=False)


@app.command("tools")
def list_tools():
    """List retrieval tool schemas."""
    for schema in default_registry().schemas():
        table = Table(title=f"{schema['name']}: {schema['description']}", title_justify="left")
        table.add_column("parameter")
        table.add_column("type")
        table.add_column("required")
        table.add_column("default")
        table.add_column("description")
        for p in schema["parameters"]:
            table.add_row(
                Text(p["name"]),
                Text(p["type"]),
                Text("yes" if p["required"] else ""),
                Text(json.dumps(p["default"]) if "default" in p else ""),
                Text(p["description"]),
            )
        console.print(table)


@app.command("tool")
def run_tool(
    graph_path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False),
    name: str = typer.Argument(..., help="Tool name, see `docgraph tools`"),
    param: list[str] | None = typer.Option(None, "--param", "-p", help="key=value (value parsed as JSON when possible)"),
    max_tokens: int = typer.Option(8000, "--max-tokens"),
    reserve_tokens: int = typer.Option(1000, "--reserve-tokens"),
    embed: bool = typer.Option(False, "--embed", help="Embed the graph first so search_nodes can run"),
):
    """Execute one retrieval tool and print its JSON result."""
    graph = _load_graph(graph_path)
    params = _parse_params(param or [])

    service = None
    if embed:
        service = build_embeddings_service(Settings())
        try:
            service.generate_graph_embeddings(graph)
        except DocGraphError as e:
            console.print(str(e), style="red", markup=False)
            service.close()
            raise typer.Exit(code=1)

    registry = default_registry()
    context = registry.create_execution_context(
        graph.document_id, graph, max_tokens=max_tokens, reserve_tokens=reserve_tokens, embeddings=service
    )
    try:
        result = registry.execute(name, params, context)
    finally:
        if service is not None:
            service.close()

    console.print_json(json.dumps(result.to_dict(), ensure_ascii=False, default=str))
    if not result.success:
        raise typer.Exit(code=1)


def _parse_params(items: list[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {item!r}")
        try:
            out[key.strip()] = json.loads(raw)
        except ValueError:
            out[key.strip()] = raw
    return out


@app.command()
def stats(
    graph_path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False),
):
    """Show graph statistics and validation results."""
    graph = _load_graph(graph_path)
    s = graph.statistics

    table = Table(title=f"Graph {graph.id} (document {graph.document_id})")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Nodes", str(s.node_count))
    table.add_row("Edges", str(s.edge_count))
    table.add_row("Average degree", f"{s.average_degree:.2f}")
    table.add_row("Max degree", str(s.max_degree))
    table.add_row("Density", f"{s.density:.4f}")
    table.add_row("Components", str(s.components))
    console.print(table)

    if any(s.nodes_by_type.values()):
        t2 = Table(title="Nodes by type")
        t2.add_column("type")
        t2.add_column("count")
        for k, v in s.nodes_by_type.items():
            if not v:
                continue
            t2.add_row(k, str(v))
        console.print(t2)

    result = graph.validate()
    for err in result.errors:
        console.print(f"error: {err}", style="red", markup=False)
    for warn in result.warnings:
        console.print(f"warning: {warn}", style="yellow", markup=False)
    console.print("valid" if result.is_valid else "invalid", style="green" if result.is_valid else "red")
    if not result.is_valid:
        raise typer.Exit(code=1)


@app.command()
def doctor():
    """Check embedding providers and the cache backend, and print actionable fixes."""
    settings = Settings()
    ok = True

    console.print("Embedding providers:")
    if settings.hosted_api_key:
        hosted = HostedEmbeddingProvider(api_key=settings.hosted_api_key, base_url=settings.hosted_base_url, model=settings.hosted_model)
        console.print(f"- Hosted: API key set, model {hosted.model} ({hosted.dimensions()} dims)", style="green")
    else:
        console.print("- Hosted: no API key.", style="yellow")
        console.print("  Fix: set DOCGRAPH_OPENAI_API_KEY (or OPENAI_API_KEY).", style="yellow")
        if settings.embed_provider == "hosted":
            ok = False

    local = LocalEmbeddingProvider(settings.embed_model)
    if local.is_available():
        console.print(f"- Local: {settings.embed_model} loaded", style="green")
    else:
        console.print(f"- Local: {settings.embed_model} failed to load", style="red")
        console.print("  Fix: `pip install fastembed` and check network access for the first model download.", style="yellow")
        if settings.embed_provider in ("local", "auto") and not (settings.embed_provider == "auto" and settings.hosted_api_key):
            ok = False

    console.print("\nCache:")
    if not settings.cache_enabled:
        console.print("- Disabled.", style="yellow")
    elif not settings.redis_url:
        console.print(f"- In-process memory cache (ttl={settings.cache_ttl_seconds}s)", style="green")
    else:
        try:
            cache = RedisEmbeddingCache.from_url(settings.redis_url, settings.cache_ttl_seconds)
            console.print(f"- Redis reachable at {settings.redis_url} ({cache.size()} cached embeddings)", style="green")
            cache.close()
        except Exception as e:
            console.print(f"- Redis not reachable at {settings.redis_url}: {e}", style="red", markup=False)
            console.print("  Fix: start Redis or unset DOCGRAPH_REDIS_URL to use the memory cache.", style="yellow")
            ok = False

    if not ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
