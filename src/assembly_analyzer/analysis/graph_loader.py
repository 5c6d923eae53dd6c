"""Utilities for loading, merging and exporting call graphs of analysis reports."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Mapping, Optional

import networkx as nx

METHOD_FIELDS = ["rva", "size", "return_type"]


def _node_id(program: str, name: str) -> str:
    return f"{program}:{name}"


def graph_from_report(payload: Mapping, *, program: Optional[str] = None, source: Optional[str] = None) -> nx.DiGraph:
    """Build a directed call graph from a report document.

    Local methods become nodes carrying their ``address``; callees that only
    appear in call lists are added as ``is_external`` nodes.
    """

    program = payload.get("assembly") or program or "assembly"
    graph = nx.DiGraph(program=program, source=source)

    for type_entry in payload.get("types", []):
        for method in type_entry.get("methods", []):
            name = method.get("name")
            if not name:
                continue
            attributes = {
                "program": program,
                "name": name,
                "address": method.get("rva", 0),
                "type": type_entry.get("name"),
                "kind": type_entry.get("kind"),
                "is_external": False,
            }
            for field in METHOD_FIELDS:
                if field in method:
                    attributes[field] = method[field]
            graph.add_node(_node_id(program, name), **attributes)

    for type_entry in payload.get("types", []):
        for method in type_entry.get("methods", []):
            caller = method.get("name")
            if not caller:
                continue
            caller_node = _node_id(program, caller)
            for called in method.get("called_methods", []):
                callee = called.get("name")
                if not callee:
                    continue
                callee_node = _node_id(program, callee)
                if callee_node not in graph:
                    graph.add_node(
                        callee_node,
                        program=program,
                        name=callee,
                        address=called.get("address", 0),
                        is_external=True,
                    )
                graph.add_edge(caller_node, callee_node)

    graph.graph["node_count"] = graph.number_of_nodes()
    graph.graph["edge_count"] = graph.number_of_edges()
    return graph


def load_call_graph(path: Path) -> nx.DiGraph:
    """Load an ``assembly_analysis.json`` report into a directed graph."""

    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return graph_from_report(payload, program=path.stem, source=str(path.resolve()))


def merge_call_graphs(paths: Iterable[Path]) -> nx.DiGraph:
    """Compose multiple graphs into a single directed graph."""

    merged = nx.DiGraph(name="merged_call_graph")
    sources: list[str] = []
    programs: set[str] = set()

    for path in paths:
        graph = load_call_graph(path)
        merged = nx.compose(merged, graph)
        sources.append(graph.graph.get("source") or str(path))
        program = graph.graph.get("program")
        if program:
            programs.add(program)

    merged.graph["sources"] = sources
    merged.graph["programs"] = sorted(programs)
    merged.graph["node_count"] = merged.number_of_nodes()
    merged.graph["edge_count"] = merged.number_of_edges()
    return merged


def export_generic_graph(graph: nx.DiGraph, destination: Path) -> None:
    """Persist a networkx graph to JSON."""

    destination = Path(destination)
    payload = {
        "graph": graph.graph.get("name", destination.stem),
        "programs": sorted({data.get("program", "unknown") for _, data in graph.nodes(data=True)}),
        "sources": graph.graph.get("sources", [graph.graph["source"]] if graph.graph.get("source") else []),
        "node_count": graph.number_of_nodes(),
        "edge_count": graph.number_of_edges(),
        "nodes": [],
        "edges": [],
    }

    for node, data in graph.nodes(data=True):
        payload["nodes"].append({"id": node, **data})

    for source, target in graph.edges():
        payload["edges"].append({"source": source, "target": target})

    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)


def sanitize_for_graphml(graph: nx.DiGraph) -> nx.DiGraph:
    """Return a copy of the graph with GraphML-friendly attributes."""

    def sanitize(mapping):
        for key in list(mapping.keys()):
            value = mapping[key]
            if value is None:
                # GraphML has no null
                del mapping[key]
                continue
            if isinstance(value, (list, tuple, set)):
                mapping[key] = ",".join(str(item) for item in value)
            elif isinstance(value, dict):
                mapping[key] = json.dumps(value)

    copy = graph.copy()
    sanitize(copy.graph)
    for _, data in copy.nodes(data=True):
        sanitize(data)
    for _, _, data in copy.edges(data=True):
        sanitize(data)
    return copy


def export_graphml(graph: nx.DiGraph, destination: Path) -> None:
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    nx.write_graphml(sanitize_for_graphml(graph), destination)


__all__ = [
    "export_generic_graph",
    "export_graphml",
    "graph_from_report",
    "load_call_graph",
    "merge_call_graphs",
    "sanitize_for_graphml",
]
