"""Command line entry points for the project."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import networkx as nx
import typer

from assembly_analyzer import __version__
from assembly_analyzer.analysis.graph_loader import (
    export_generic_graph,
    export_graphml,
    load_call_graph,
    merge_call_graphs,
)
from assembly_analyzer.analysis.naming import ParameterKeyStyle
from assembly_analyzer.analysis.report import write_report
from assembly_analyzer.config import DEFAULT_ILSPYCMD, AnalysisSettings
from assembly_analyzer.errors import AnalyzerError
from assembly_analyzer.pipelines.analyze_assembly import REPORT_FILENAME, analyze_assembly

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
EXPORT_FORMATS = ("json", "graphml")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _usage_error(ctx: typer.Context, message: str) -> None:
    typer.echo(ctx.get_help())
    typer.secho(message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _load_graph_from_inputs(inputs: List[Path]) -> nx.DiGraph:
    resolved = [item.expanduser().resolve() for item in inputs]
    if not resolved:
        raise typer.BadParameter("At least one --input report is required.")
    if len(resolved) == 1:
        return load_call_graph(resolved[0])
    return merge_call_graphs(resolved)


app = typer.Typer(
    help="Produces program information about a .NET assembly: types, method signatures, call graph and decompilation.",
)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    display_version: bool = typer.Option(False, "--version", "-V", help="Show version and exit."),
) -> None:
    """Print the package version, or usage when no command is given."""

    if display_version:
        typer.echo(__version__)
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=1)


@app.command("analyze")
def analyze(
    ctx: typer.Context,
    assembly: Optional[Path] = typer.Option(
        None, "--assembly", exists=True, dir_okay=False, help="Path to the assembly to analyze (required)."
    ),
    output_path: Optional[Path] = typer.Option(
        None, "--output-path", file_okay=False, help="Directory to write analysis results to (required)."
    ),
    include_full_project_decompilation: bool = typer.Option(
        False, "--include-full-project-decompilation", help="Also decompile the whole project with ilspycmd."
    ),
    remove_dead_code: bool = typer.Option(False, "--remove-dead-code", help="Remove dead code."),
    remove_dead_stores: bool = typer.Option(False, "--remove-dead-stores", help="Remove dead stores."),
    ignore_compiler_generated: bool = typer.Option(
        False, "--ignore-compiler-generated", help="Skip methods marked [CompilerGenerated]."
    ),
    nested_directories: bool = typer.Option(
        False, "--nested-directories", help="Generate nested directories for namespaces."
    ),
    attempt_symbol_load: bool = typer.Option(
        False, "--attempt-symbol-load", help="Attempt to load assembly symbols; can be slow."
    ),
    pdb_file: Optional[Path] = typer.Option(
        None, "--use-pdb-file", exists=True, dir_okay=False, help="PDB file to use during symbol load."
    ),
    no_formatting: bool = typer.Option(
        False, "--no-formatting", help="Strip formatting characters from decompilation output."
    ),
    parameter_keys: ParameterKeyStyle = typer.Option(
        ParameterKeyStyle.NAMES,
        "--parameter-keys",
        case_sensitive=False,
        help="Build method key parameter lists from parameter names or from signature types.",
    ),
    legacy_call_records: bool = typer.Option(
        False,
        "--legacy-call-records",
        help="Emit the caller's own name and address for locally resolved calls, as older releases did.",
    ),
    ilspycmd: str = typer.Option(DEFAULT_ILSPYCMD, "--ilspycmd", help="ilspycmd executable for project decompilation."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Analyze an assembly and write assembly_analysis.json to the output directory."""

    if assembly is None:
        _usage_error(ctx, "You must specify --assembly <path>.")
    if output_path is None:
        _usage_error(ctx, "You must specify --output-path <path>.")
    _configure_logging(verbose)

    settings = AnalysisSettings(
        assembly_path=assembly,
        output_path=output_path,
        include_full_project_decompilation=include_full_project_decompilation,
        remove_dead_code=remove_dead_code,
        remove_dead_stores=remove_dead_stores,
        ignore_compiler_generated=ignore_compiler_generated,
        nested_directories=nested_directories,
        attempt_symbol_load=attempt_symbol_load,
        pdb_file_path=pdb_file,
        no_formatting=no_formatting,
        parameter_key_style=parameter_keys,
        legacy_self_reference=legacy_call_records,
        ilspycmd=ilspycmd,
    )

    try:
        report = analyze_assembly(settings)
    except (AnalyzerError, OSError) as exc:
        typer.secho(f"Error during assembly analysis: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    try:
        destination = write_report(report, settings.output_path / REPORT_FILENAME)
    except OSError as exc:
        typer.secho(f"Error serializing result to JSON: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    typer.echo(f"Analysis result written to: {destination}")


@app.command("callgraph-export")
def callgraph_export(
    input: List[Path] = typer.Option(..., "--input", "-i", exists=True, dir_okay=False, help="Analysis report(s) to load."),
    output: Path = typer.Option(..., "--output", "-o", help="Destination file for the exported graph."),
    format: str = typer.Option("json", "--format", "-f", help="Export format: json or graphml."),
) -> None:
    """Export the call graph of one or more analysis reports."""

    fmt = format.lower()
    if fmt not in EXPORT_FORMATS:
        raise typer.BadParameter(f"Unsupported format {format!r}; choose json or graphml.")

    graph = _load_graph_from_inputs(input)
    output = output.expanduser()
    if fmt == "graphml":
        export_graphml(graph, output)
    else:
        export_generic_graph(graph, output)

    typer.secho(
        f"Call graph with {graph.number_of_nodes()} nodes and {graph.number_of_edges()} edges written to {output}",
        fg=typer.colors.GREEN,
    )


def run() -> None:
    """Console-script entry point."""

    app()


if __name__ == "__main__":
    run()
