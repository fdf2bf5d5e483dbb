#!/usr/bin/env python3
"""
DESeq Pipeline CLI

Command-line interface for the differential expression pipeline.
Reconciles a raw count matrix with sample metadata, runs the negative
binomial Wald test analysis, filters, annotates and reports the results.
"""

import typer
import sys
from pathlib import Path
from typing import Optional
from rich.console import Console
import logging

from . import __version__
from .utils import setup_logging
from .config import load_config
from .counts import load_count_matrix
from .pipeline import (
    run_reconciliation, run_differential_expression,
    filter_results_file, annotate_results_file
)

app = typer.Typer(
    name="deseq_pipeline",
    help="DESeq Pipeline - Differential expression of bulk RNA-seq counts between two conditions",
    add_completion=False,
)

console = Console()

# Global options
def version_callback(value: bool):
    if value:
        console.print(f"DESeq Pipeline v{__version__}")
        raise typer.Exit()

def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)

@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """DESeq Pipeline CLI"""
    pass

@app.command()
def reconcile(
    counts: Path = typer.Argument(..., help="Gene-by-sample raw count table"),
    metadata: Path = typer.Argument(..., help="Sample metadata table"),
    output_dir: Path = typer.Option("./reconciled", help="Output directory"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML analysis configuration"),
    positive: Optional[str] = typer.Option(None, help="Condition token of the tested group"),
    negative: Optional[str] = typer.Option(None, help="Label of the reference group"),
    key_pattern: Optional[str] = typer.Option(None, help="Regex deriving sample keys from file names"),
):
    """Match metadata records to count columns and write the aligned inputs."""
    console.print("[bold blue]Reconciling samples[/bold blue]")

    try:
        config = load_config(config_file).update(
            positive_label=positive, negative_label=negative, sample_key_pattern=key_pattern
        )
        results = run_reconciliation(
            count_file=counts,
            metadata_file=metadata,
            output_dir=output_dir,
            config=config
        )
        console.print("[bold green]Reconciliation completed successfully![/bold green]")
        for label, n in results['group_sizes'].items():
            console.print(f"  {label}: {n} samples")
        console.print(f"Results saved to: {output_dir}")

    except Exception as e:
        console.print(f"[bold red]Error in reconciliation: {e}[/bold red]")
        sys.exit(1)

@app.command()
def run(
    counts: Path = typer.Argument(..., help="Gene-by-sample raw count table"),
    metadata: Path = typer.Argument(..., help="Sample metadata table"),
    output_dir: Path = typer.Option("./deseq_results", help="Output directory"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML analysis configuration"),
    symbols: Optional[Path] = typer.Option(None, help="Gene id to symbol table (gene_id, symbol)"),
    alpha: Optional[float] = typer.Option(None, help="Adjusted p-value threshold"),
    positive: Optional[str] = typer.Option(None, help="Condition token of the tested group"),
    negative: Optional[str] = typer.Option(None, help="Label of the reference group"),
    threads: Optional[int] = typer.Option(None, help="Worker processes for per-gene fitting"),
    plots: bool = typer.Option(True, help="Create plots"),
    report: bool = typer.Option(True, help="Create HTML report"),
):
    """Run the full differential expression analysis."""
    console.print("[bold blue]Running differential expression analysis[/bold blue]")

    try:
        config = load_config(config_file).update(
            alpha=alpha, positive_label=positive, negative_label=negative, n_jobs=threads
        )
        results = run_differential_expression(
            count_file=counts,
            metadata_file=metadata,
            output_dir=output_dir,
            config=config,
            symbol_file=symbols,
            make_plots=plots,
            make_report=report
        )
        summary = results['summary']
        console.print("[bold green]Differential expression analysis completed![/bold green]")
        console.print(
            f"{summary['n_significant']} genes with padj < {config.alpha} "
            f"({summary['n_up']} up, {summary['n_down']} down in {summary['positive']})"
        )
        console.print(f"Results saved to: {output_dir}")

    except Exception as e:
        console.print(f"[bold red]Error in differential expression analysis: {e}[/bold red]")
        sys.exit(1)

@app.command(name="filter")
def filter_results(
    results: Path = typer.Argument(..., help="Results table from 'run'"),
    output_file: Path = typer.Option("significant.tsv", help="Output table"),
    alpha: float = typer.Option(0.05, help="Adjusted p-value threshold"),
):
    """Select genes with adjusted p-value below a threshold."""
    try:
        significant = filter_results_file(results, output_file, alpha)
        console.print(f"[bold green]{len(significant)} genes with padj < {alpha}[/bold green]")
        console.print(f"Saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error filtering results: {e}[/bold red]")
        sys.exit(1)

@app.command()
def annotate(
    results: Path = typer.Argument(..., help="Results table"),
    symbols: Path = typer.Argument(..., help="Gene id to symbol table (gene_id, symbol)"),
    output_file: Path = typer.Option("annotated.tsv", help="Output table"),
):
    """Add gene symbols to a results table."""
    try:
        annotated = annotate_results_file(results, symbols, output_file)
        n_found = int(annotated['symbol'].notna().sum())
        console.print(f"[bold green]Annotated {n_found} of {len(annotated)} genes[/bold green]")
        console.print(f"Saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error annotating results: {e}[/bold red]")
        sys.exit(1)

@app.command()
def validate_counts(
    counts: Path = typer.Argument(..., help="Count table to validate"),
):
    """Validate a raw count table."""
    console.print("[bold blue]Validating count matrix[/bold blue]")

    try:
        matrix = load_count_matrix(counts)
        console.print("[bold green]Count matrix is valid![/bold green]")
        console.print(f"Found {matrix.shape[0]} genes and {matrix.shape[1]} samples")

    except Exception as e:
        console.print(f"[bold red]Count matrix validation failed: {e}[/bold red]")
        sys.exit(1)

if __name__ == "__main__":
    app()
