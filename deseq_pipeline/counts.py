"""
Count matrix and sample table I/O.

This module reads the gene-by-sample raw count table and the sample
metadata table, validates them, and writes result tables.
"""

import logging
from pathlib import Path
from typing import List, Union
import numpy as np
import pandas as pd

from .utils import validate_file_exists, is_gzipped, format_number

logger = logging.getLogger(__name__)

def _delimiter_for(path: Path) -> str:
    """Comma for .csv / .csv.gz files, tab otherwise."""
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] in ('.gz', '.bz2', '.xz', '.zip'):
        suffixes = suffixes[:-1]
    return ',' if suffixes and suffixes[-1] == '.csv' else '\t'

def _read_table(path: Path, **kwargs) -> pd.DataFrame:
    compression = 'gzip' if is_gzipped(path) else 'infer'
    return pd.read_csv(path, sep=_delimiter_for(path), compression=compression, **kwargs)

def validate_count_matrix(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Validate a raw count matrix and cast it to int64.

    Args:
        counts: Genes x samples DataFrame

    Returns:
        Integer-typed copy of the matrix

    Raises:
        ValueError: If identifiers are duplicated or values are missing,
            negative or non-integer
    """
    if counts.empty:
        raise ValueError("Count matrix is empty")

    dup_genes = counts.index[counts.index.duplicated()].unique().tolist()
    if dup_genes:
        raise ValueError(f"Duplicate gene identifiers: {dup_genes[:10]}")

    dup_samples = counts.columns[counts.columns.duplicated()].unique().tolist()
    if dup_samples:
        raise ValueError(f"Duplicate sample identifiers: {dup_samples}")

    non_numeric = [c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric count columns: {non_numeric}")

    values = counts.to_numpy(dtype=float)
    if np.isnan(values).any():
        bad = counts.index[np.isnan(values).any(axis=1)].tolist()
        raise ValueError(f"Missing count values for genes: {bad[:10]}")
    if (values < 0).any():
        bad = counts.index[(values < 0).any(axis=1)].tolist()
        raise ValueError(f"Negative counts for genes: {bad[:10]}")
    if (values != np.round(values)).any():
        bad = counts.index[(values != np.round(values)).any(axis=1)].tolist()
        raise ValueError(f"Non-integer counts for genes: {bad[:10]}")

    validated = counts.astype(np.int64)
    validated.index = validated.index.astype(str)
    validated.columns = validated.columns.astype(str)
    return validated

def load_count_matrix(count_file: Union[str, Path]) -> pd.DataFrame:
    """
    Load a gene-by-sample raw count table.

    The first column holds gene identifiers and the header row holds sample
    identifiers. Files ending in .csv (optionally compressed) are read as
    comma-separated, everything else as tab-separated.

    Args:
        count_file: Path to count table

    Returns:
        Validated integer count matrix (genes x samples)
    """
    path = validate_file_exists(count_file)
    logger.info(f"Loading count matrix from {path}")

    try:
        df = _read_table(path, index_col=0, comment='#')
    except Exception as e:
        raise ValueError(f"Could not read count matrix {path}: {e}")

    df.index.name = 'gene_id'
    counts = validate_count_matrix(df)

    logger.info(
        f"Count matrix: {counts.shape[0]} genes x {counts.shape[1]} samples, "
        f"{format_number(counts.to_numpy().sum())} reads"
    )
    return counts

def load_sample_metadata(metadata_file: Union[str, Path], required_columns: List[str]) -> pd.DataFrame:
    """
    Load a sample metadata table (one row per sample).

    Args:
        metadata_file: CSV or TSV file
        required_columns: Columns that must be present

    Returns:
        Metadata DataFrame with string-typed cells

    Raises:
        ValueError: If the file cannot be read or columns are missing
    """
    path = validate_file_exists(metadata_file)
    logger.info(f"Loading sample metadata from {path}")

    try:
        df = _read_table(path, dtype=str, keep_default_na=False)
    except Exception as e:
        raise ValueError(f"Could not read sample metadata: {e}")

    missing_cols = [col for col in required_columns if col not in df.columns]
    if missing_cols:
        raise ValueError(f"Missing required metadata columns: {missing_cols}")

    logger.info(f"Sample metadata: {len(df)} records")
    return df

def write_results(table: pd.DataFrame, output_file: Union[str, Path]) -> Path:
    """
    Write a results table as TSV; undefined statistics are written as NA.

    Args:
        table: Results table indexed by gene id
        output_file: Output path

    Returns:
        Path of written file
    """
    output_file = Path(output_file)
    table.to_csv(output_file, sep='\t', index_label='gene_id', na_rep='NA')
    logger.debug(f"Wrote {len(table)} rows to {output_file}")
    return output_file

def read_results(results_file: Union[str, Path]) -> pd.DataFrame:
    """Read a results table written by :func:`write_results`."""
    path = validate_file_exists(results_file)
    table = pd.read_csv(path, sep='\t', index_col='gene_id', na_values=['NA'], keep_default_na=False)
    table.index = table.index.astype(str)
    return table
