"""
Reporting module.

Summarizes a differential expression run as a metrics dictionary (saved as
JSON) and renders an HTML report with Jinja2.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import pandas as pd
from jinja2 import Environment, PackageLoader, select_autoescape

from .deseq import DEResult, filter_significant

logger = logging.getLogger(__name__)

def summarize_results(result: DEResult, alpha: float = 0.05) -> Dict[str, Any]:
    """
    Summary metrics of a run.

    Args:
        result: Output of run_deseq
        alpha: Significance threshold

    Returns:
        Dictionary of JSON-serializable metrics
    """
    table = result.table
    significant = filter_significant(table, alpha)
    trend = result.dispersion_fit.trend

    return {
        'contrast': result.contrast,
        'positive': result.positive,
        'reference': result.reference,
        'alpha': alpha,
        'group_sizes': dict(result.group_sizes),
        'n_genes': int(len(table)),
        'status_counts': {str(k): int(v) for k, v in table['status'].value_counts().sort_index().items()},
        'n_significant': int(len(significant)),
        'n_up': int((significant['log2FoldChange'] > 0).sum()),
        'n_down': int((significant['log2FoldChange'] < 0).sum()),
        'size_factor_min': float(result.size_factors.min()),
        'size_factor_max': float(result.size_factors.max()),
        'size_factors': {str(k): float(v) for k, v in result.size_factors.items()},
        'dispersion_trend': f"{trend.fit_type} {tuple(round(c, 6) for c in trend.coefficients)}",
        'dispersion_prior_variance': float(result.dispersion_fit.prior_var),
        'independent_filtering_cutoff': float(result.mean_cutoff),
    }


class ReportGenerator:
    """Generate HTML reports for a differential expression run."""

    def __init__(self, output_dir: Path):
        """
        Initialize report generator.

        Args:
            output_dir: Directory to save generated reports
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.env = Environment(
            loader=PackageLoader('deseq_pipeline', 'templates'),
            autoescape=select_autoescape(['html', 'xml'])
        )
        self.env.filters['round'] = self._round_filter

    def _round_filter(self, value: float, digits: int = 2) -> float:
        """Custom Jinja2 filter for rounding numbers."""
        try:
            return round(float(value), digits)
        except (ValueError, TypeError):
            return value

    @staticmethod
    def _format_rows(table: pd.DataFrame) -> List[List[str]]:
        rows = []
        for gene_id, row in table.iterrows():
            cells = [str(gene_id)]
            for value in row:
                if isinstance(value, float):
                    cells.append('NA' if pd.isna(value) else f"{value:.4g}")
                else:
                    cells.append('NA' if pd.isna(value) else str(value))
            rows.append(cells)
        return rows

    def generate_report(
        self,
        summary: Dict[str, Any],
        top_genes: pd.DataFrame,
        output_name: str = 'report.html',
        title: str = 'Differential Expression Report',
        plots: Optional[List[Path]] = None
    ) -> Path:
        """
        Render the HTML report.

        Args:
            summary: Output of summarize_results
            top_genes: Rows shown in the top genes table
            output_name: Output HTML file name
            title: Report title
            plots: Image files, linked relative to the output directory

        Returns:
            Path to the report
        """
        template = self.env.get_template('report.html')

        plot_links = []
        for plot in plots or []:
            plot = Path(plot)
            try:
                plot_links.append(str(plot.relative_to(self.output_dir)))
            except ValueError:
                plot_links.append(str(plot))

        html_content = template.render(
            title=title,
            generated=datetime.now().strftime('%Y-%m-%d %H:%M'),
            summary=summary,
            top_columns=['gene_id'] + list(top_genes.columns),
            top_rows=self._format_rows(top_genes),
            plots=plot_links,
        )

        output_path = self.output_dir / output_name
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(html_content)

        logger.info(f"Report generated: {output_path}")
        return output_path

def generate_final_report(
    result: DEResult,
    output_file: Path,
    alpha: float = 0.05,
    title: str = 'Differential Expression Report',
    top_n: int = 25,
    table: Optional[pd.DataFrame] = None,
    plots: Optional[List[Path]] = None
) -> Path:
    """
    Summarize a run and write the HTML report.

    Args:
        result: Output of run_deseq
        output_file: Output HTML path
        alpha: Significance threshold
        title: Report title
        top_n: Number of top genes listed
        table: Table to list top genes from (e.g. annotated); defaults to
            the result table
        plots: Image files to embed

    Returns:
        Path to the report
    """
    output_file = Path(output_file)
    summary = summarize_results(result, alpha)
    source = table if table is not None else result.table
    generator = ReportGenerator(output_file.parent)
    return generator.generate_report(
        summary, source.head(top_n), output_name=output_file.name, title=title, plots=plots
    )
