"""
End-to-end analysis runs.

This module wires the pipeline stages together: load and reconcile the
inputs, run the differential expression engine, filter, annotate, plot and
report, writing every table to the output directory.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional
import pandas as pd

from .annotate import annotate_results, load_symbol_table
from .config import AnalysisConfig
from .counts import load_count_matrix, load_sample_metadata, read_results, write_results
from .deseq import run_deseq, filter_significant
from .reconcile import AlignedDataset, reconcile_samples, rules_from_config
from .report import generate_final_report, summarize_results
from .utils import validate_directory_exists, save_metrics_json, create_output_dirs

logger = logging.getLogger(__name__)

def load_aligned_dataset(
    count_file: Path,
    metadata_file: Path,
    config: AnalysisConfig
) -> AlignedDataset:
    """Load counts and metadata and reconcile them with the configured rules."""
    counts = load_count_matrix(count_file)
    metadata = load_sample_metadata(
        metadata_file, required_columns=[config.condition_field, config.sample_key_field]
    )
    condition_rule, key_rule = rules_from_config(config)
    return reconcile_samples(counts, metadata, condition_rule, key_rule)

def run_reconciliation(
    count_file: Path,
    metadata_file: Path,
    output_dir: Path,
    config: Optional[AnalysisConfig] = None
) -> Dict[str, Any]:
    """
    Reconcile inputs and write the aligned count matrix and sample table.

    Returns:
        Dictionary with output paths and sample counts
    """
    config = config or AnalysisConfig()
    output_dir = validate_directory_exists(output_dir, create=True)
    dataset = load_aligned_dataset(count_file, metadata_file, config)

    counts_file = output_dir / 'aligned_counts.tsv'
    samples_file = output_dir / 'samples.tsv'
    dataset.counts.to_csv(counts_file, sep='\t', index_label='gene_id')
    dataset.samples.to_csv(samples_file, sep='\t', index_label='sample_id')

    return {
        'aligned_counts': str(counts_file),
        'samples': str(samples_file),
        'n_samples': dataset.n_samples,
        'group_sizes': dataset.group_sizes(),
    }

def run_differential_expression(
    count_file: Path,
    metadata_file: Path,
    output_dir: Path,
    config: Optional[AnalysisConfig] = None,
    symbol_file: Optional[Path] = None,
    make_plots: bool = True,
    make_report: bool = True
) -> Dict[str, Any]:
    """
    Run the complete analysis and write all outputs.

    Outputs in ``output_dir``:
        results.tsv          every gene, sorted by padj
        significant.tsv      genes with padj < alpha
        annotated.tsv        significant genes with symbols (with symbol_file)
        size_factors.tsv     size factor per sample
        dispersions.tsv      dispersion estimates per tested gene
        samples.tsv          reconciled sample table
        summary.json         run metrics
        plots/               volcano, dispersion and top gene plots
        report.html          HTML summary

    Returns:
        Dictionary with the summary metrics and output paths
    """
    config = config or AnalysisConfig()
    output_dir = validate_directory_exists(output_dir, create=True)
    logger.info(f"Running differential expression analysis into {output_dir}")

    dataset = load_aligned_dataset(count_file, metadata_file, config)
    result = run_deseq(dataset, config)
    significant = filter_significant(result.table, config.alpha)

    outputs = {
        'results': write_results(result.table, output_dir / 'results.tsv'),
        'significant': write_results(significant, output_dir / 'significant.tsv'),
        'dispersions': write_results(result.dispersions, output_dir / 'dispersions.tsv'),
    }

    size_factors_file = output_dir / 'size_factors.tsv'
    result.size_factors.to_frame().to_csv(size_factors_file, sep='\t', index_label='sample_id')
    outputs['size_factors'] = size_factors_file

    samples_file = output_dir / 'samples.tsv'
    dataset.samples.to_csv(samples_file, sep='\t', index_label='sample_id')
    outputs['samples'] = samples_file

    report_table = significant
    if symbol_file is not None:
        symbols = load_symbol_table(symbol_file)
        annotated = annotate_results(significant, symbols)
        outputs['annotated'] = write_results(annotated, output_dir / 'annotated.tsv')
        report_table = annotated

    plot_files = []
    if make_plots:
        from .viz import create_visualizations

        plot_dir = create_output_dirs(output_dir, ['plots'])['plots']
        plot_files = list(create_visualizations(result, dataset, plot_dir, alpha=config.alpha).values())
        outputs['plots'] = plot_dir

    summary = summarize_results(result, config.alpha)
    summary['config'] = config.to_dict()
    summary_file = output_dir / 'summary.json'
    save_metrics_json(summary, summary_file)
    outputs['summary'] = summary_file

    if make_report:
        outputs['report'] = generate_final_report(
            result, output_dir / 'report.html', alpha=config.alpha,
            title=f"Differential Expression: {result.contrast}",
            table=report_table if len(report_table) else result.table,
            plots=plot_files
        )

    return {'summary': summary, 'outputs': {k: str(v) for k, v in outputs.items()}}

def filter_results_file(results_file: Path, output_file: Path, alpha: float = 0.05) -> pd.DataFrame:
    """Write the significant subset of a results file."""
    table = read_results(results_file)
    significant = filter_significant(table, alpha)
    write_results(significant, output_file)
    logger.info(f"{len(significant)} of {len(table)} genes with padj < {alpha}")
    return significant

def annotate_results_file(results_file: Path, symbol_file: Path, output_file: Path) -> pd.DataFrame:
    """Write a results file left-joined with gene symbols."""
    annotated = annotate_results(read_results(results_file), load_symbol_table(symbol_file))
    write_results(annotated, output_file)
    return annotated
