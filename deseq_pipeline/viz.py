"""
Visualization module.

Renders results that the engine has already computed: volcano plot,
normalized counts of a single gene and the dispersion diagnostic.
"""

import logging
from pathlib import Path
from typing import Optional
import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns

from .deseq import DEResult, TESTED
from .normalization import normalized_counts
from .reconcile import AlignedDataset

logger = logging.getLogger(__name__)

def plot_volcano(
    table: pd.DataFrame,
    output_file: Path,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    title: Optional[str] = None
) -> Path:
    """
    Volcano plot of log2 fold change against -log10 adjusted p-value.

    Genes without an adjusted p-value are not drawn.

    Args:
        table: Results table
        output_file: Output image path
        alpha: Significance threshold for coloring
        lfc_threshold: Absolute log2 fold change marked with guide lines
        title: Plot title

    Returns:
        Path to the image
    """
    logger.info(f"Creating volcano plot: {output_file}")

    df = table[table['padj'].notna()].copy()
    df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=np.finfo(float).tiny))
    df['category'] = 'not significant'
    sig = df['padj'] < alpha
    df.loc[sig & (df['log2FoldChange'] > 0), 'category'] = 'up'
    df.loc[sig & (df['log2FoldChange'] < 0), 'category'] = 'down'

    palette = {'up': '#d62728', 'down': '#1f77b4', 'not significant': '#bbbbbb'}

    plt.figure(figsize=(8, 6))
    sns.scatterplot(
        data=df, x='log2FoldChange', y='neg_log10_padj', hue='category',
        palette=palette, s=12, linewidth=0, alpha=0.8
    )
    plt.axhline(-np.log10(alpha), color='black', linestyle='--', linewidth=0.8)
    plt.axvline(lfc_threshold, color='grey', linestyle=':', linewidth=0.8)
    plt.axvline(-lfc_threshold, color='grey', linestyle=':', linewidth=0.8)
    plt.xlabel('log2 Fold Change')
    plt.ylabel('-log10 Adjusted p-value')
    plt.title(title or 'Volcano Plot')
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(output_file, dpi=300, bbox_inches='tight')
    plt.close()

    return Path(output_file)

def plot_gene_counts(
    dataset: AlignedDataset,
    size_factors: pd.Series,
    gene: str,
    output_file: Path
) -> Path:
    """
    Normalized counts of one gene per condition.

    Raises:
        KeyError: If the gene is not in the count matrix
    """
    if gene not in dataset.counts.index:
        raise KeyError(f"Gene not found in count matrix: {gene}")

    logger.info(f"Plotting normalized counts for {gene}")
    values = normalized_counts(dataset.counts.loc[[gene]], size_factors).iloc[0]
    df = pd.DataFrame({
        'normalized_count': values.to_numpy() + 0.5,
        'condition': dataset.conditions.to_numpy(),
    })

    plt.figure(figsize=(5, 5))
    sns.stripplot(data=df, x='condition', y='normalized_count', hue='condition', size=7, legend=False)
    plt.yscale('log')
    plt.ylabel('Normalized count + 0.5')
    plt.xlabel('')
    plt.title(gene)
    plt.tight_layout()
    plt.savefig(output_file, dpi=300, bbox_inches='tight')
    plt.close()

    return Path(output_file)

def plot_dispersions(result: DEResult, output_file: Path) -> Path:
    """Gene-wise, fitted and final dispersions against mean expression."""
    logger.info(f"Creating dispersion plot: {output_file}")

    disp = result.dispersions
    means = result.table.loc[disp.index, 'baseMean']
    order = np.argsort(means.to_numpy())

    plt.figure(figsize=(8, 6))
    plt.scatter(means, disp['dispGeneEst'], s=4, color='black', alpha=0.4, label='gene-wise')
    plt.scatter(means, disp['dispersion'], s=4, color='#1f77b4', alpha=0.4, label='final')
    plt.plot(means.to_numpy()[order], disp['dispFit'].to_numpy()[order], color='#d62728', label='trend')
    plt.xscale('log')
    plt.yscale('log')
    plt.xlabel('Mean of normalized counts')
    plt.ylabel('Dispersion')
    plt.title(f'Dispersion estimates ({result.dispersion_fit.trend.fit_type} trend)')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(output_file, dpi=300, bbox_inches='tight')
    plt.close()

    return Path(output_file)

def create_visualizations(
    result: DEResult,
    dataset: AlignedDataset,
    output_dir: Path,
    alpha: float = 0.05,
    top_n: int = 6
) -> dict:
    """
    Render the standard plot set into ``output_dir``.

    Returns:
        Mapping of plot name to file path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    plots = {
        'volcano': plot_volcano(result.table, output_dir / 'volcano.png', alpha=alpha,
                                title=f'Volcano Plot: {result.contrast}'),
        'dispersions': plot_dispersions(result, output_dir / 'dispersions.png'),
    }

    tested = result.table[result.table['status'] == TESTED]
    for gene in tested.index[:top_n]:
        safe = str(gene).replace('/', '_')
        plots[f'counts_{gene}'] = plot_gene_counts(
            dataset, result.size_factors, gene, output_dir / f'counts_{safe}.png'
        )

    return plots
