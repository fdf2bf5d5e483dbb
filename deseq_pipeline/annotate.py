"""
Gene symbol annotation.

Joins result tables with a gene-id -> symbol table supplied by the user
(for example an export from Ensembl BioMart). No lookup service is called.
"""

import logging
from pathlib import Path
from typing import Union
import pandas as pd

from .utils import validate_file_exists

logger = logging.getLogger(__name__)

def strip_version(gene_ids: pd.Index) -> pd.Index:
    """Drop Ensembl version suffixes, e.g. ENSG00000141510.16 -> ENSG00000141510."""
    return pd.Index(gene_ids.astype(str).str.replace(r'^(ENS[A-Z]*\d+)\.\d+$', r'\1', regex=True))

def load_symbol_table(
    symbol_file: Union[str, Path],
    id_column: str = 'gene_id',
    symbol_column: str = 'symbol'
) -> pd.Series:
    """
    Load a gene id to symbol mapping.

    Args:
        symbol_file: TSV/CSV file with id and symbol columns
        id_column: Column with gene identifiers
        symbol_column: Column with gene symbols

    Returns:
        Series of symbols indexed by version-less gene id
    """
    path = validate_file_exists(symbol_file)
    sep = ',' if path.suffix.lower() == '.csv' else '\t'
    df = pd.read_csv(path, sep=sep, dtype=str)

    missing = [c for c in (id_column, symbol_column) if c not in df.columns]
    if missing:
        raise ValueError(f"Symbol table {path} is missing columns: {missing}")

    df = df.dropna(subset=[id_column])
    symbols = pd.Series(df[symbol_column].to_numpy(), index=strip_version(pd.Index(df[id_column])), name='symbol')
    symbols = symbols[~symbols.index.duplicated(keep='first')]
    logger.info(f"Loaded {len(symbols)} gene symbols from {path}")
    return symbols

def annotate_results(table: pd.DataFrame, symbols: pd.Series) -> pd.DataFrame:
    """
    Left-join a results table with gene symbols.

    Row order and every input row are preserved; identifiers without a
    symbol get a null ``symbol``.

    Args:
        table: Results indexed by gene id
        symbols: Symbols indexed by version-less gene id

    Returns:
        Copy of ``table`` with a ``symbol`` column first
    """
    keys = strip_version(table.index)
    annotated = table.copy()
    annotated.insert(0, 'symbol', symbols.reindex(keys).to_numpy())

    n_missing = int(annotated['symbol'].isna().sum())
    if n_missing:
        logger.info(f"{n_missing} of {len(annotated)} genes have no symbol")
    return annotated
