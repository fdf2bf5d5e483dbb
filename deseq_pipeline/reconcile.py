"""
Sample reconciliation.

Matches sample metadata records to count matrix columns and derives a
two-level condition label per sample. Both the label rule and the sample
key rule are pluggable callables taking one metadata record (a mapping of
column name to value), so datasets with other naming conventions only
need different rules, not different code.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional
import numpy as np
import pandas as pd

from .config import AnalysisConfig
from .exceptions import ReconciliationError

logger = logging.getLogger(__name__)

RecordRule = Callable[[Mapping[str, str]], Optional[str]]


def _field_text(record: Mapping[str, str], field: str) -> str:
    """Stripped text of a record field; missing values give an empty string."""
    value = record[field]
    if value is None or (np.isscalar(value) and pd.isna(value)):
        return ''
    return str(value).strip()


class ConditionRule:
    """
    Assign a condition label by case-insensitive substring match.

    Records whose ``field`` contains ``positive`` get the positive label;
    every other record gets ``negative``.
    """

    def __init__(self, positive: str, negative: str, field: str = "title"):
        self.positive = positive
        self.negative = negative
        self.field = field

    def __call__(self, record: Mapping[str, str]) -> str:
        text = _field_text(record, self.field)
        return self.positive if self.positive.lower() in text.lower() else self.negative

    def __repr__(self):
        return f"ConditionRule(positive={self.positive!r}, negative={self.negative!r}, field={self.field!r})"


class SampleKeyRule:
    """
    Derive the short sample key from a file name or URL.

    The basename of ``field`` is searched with ``pattern``; the first
    capture group is the key. Records that do not match yield None.
    """

    def __init__(self, field: str = "supplementary_file", pattern: str = r"^(?:GSM\d+_)?([^.]+)"):
        self.field = field
        self.pattern = re.compile(pattern)
        if self.pattern.groups < 1:
            raise ValueError(f"Sample key pattern needs a capture group: {pattern!r}")

    def __call__(self, record: Mapping[str, str]) -> Optional[str]:
        value = _field_text(record, self.field)
        if not value:
            return None
        basename = value.rstrip('/').rsplit('/', 1)[-1]
        match = self.pattern.search(basename)
        if not match or not match.group(1):
            return None
        return match.group(1)

    def __repr__(self):
        return f"SampleKeyRule(field={self.field!r}, pattern={self.pattern.pattern!r})"


@dataclass(frozen=True)
class AlignedDataset:
    """
    Count matrix and sample table in identical sample order.

    Attributes:
        counts: Raw integer counts, genes x samples
        samples: One row per sample, indexed by sample id, with a
            ``condition`` column
    """

    counts: pd.DataFrame
    samples: pd.DataFrame

    def __post_init__(self):
        if 'condition' not in self.samples.columns:
            raise ReconciliationError("Sample table has no 'condition' column")
        if list(self.counts.columns) != list(self.samples.index):
            raise ReconciliationError(
                "Count columns and sample table rows are not in identical order"
            )

    @property
    def conditions(self) -> pd.Series:
        return self.samples['condition']

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    def group_sizes(self) -> Dict[str, int]:
        """Number of samples per condition label, in order of first appearance."""
        return {str(k): int(v) for k, v in self.conditions.value_counts(sort=False).items()}

    def design_vector(self, positive: str) -> np.ndarray:
        """0/1 indicator of the positive condition, one entry per sample."""
        return (self.conditions == positive).to_numpy(dtype=float)


def rules_from_config(config: AnalysisConfig):
    """Build the (condition_rule, key_rule) pair described by a config."""
    condition_rule = ConditionRule(config.positive_label, config.negative_label, config.condition_field)
    key_rule = SampleKeyRule(config.sample_key_field, config.sample_key_pattern)
    return condition_rule, key_rule


def reconcile_samples(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_rule: RecordRule,
    key_rule: RecordRule
) -> AlignedDataset:
    """
    Align a count matrix with sample metadata.

    Args:
        counts: Raw counts, genes x samples
        metadata: One record per sample
        condition_rule: Callable mapping a record to its condition label
        key_rule: Callable mapping a record to the count column it describes

    Returns:
        AlignedDataset restricted to samples present in both inputs, in
        metadata order

    Raises:
        ReconciliationError: If no metadata record matches a count column
    """
    if metadata.empty:
        raise ReconciliationError("Sample metadata is empty: no samples to analyze")

    counts = counts.rename(columns=str)

    records = metadata.to_dict('records')
    samples = metadata.copy()
    samples['condition'] = [condition_rule(r) for r in records]
    samples['sample_id'] = [key_rule(r) for r in records]

    no_key = samples['sample_id'].isna()
    if no_key.any():
        logger.warning(f"{int(no_key.sum())} metadata records yielded no sample key and were dropped")
        samples = samples[~no_key]

    duplicated = samples['sample_id'].duplicated(keep='first')
    if duplicated.any():
        logger.warning(
            f"Duplicate sample keys kept at first occurrence: "
            f"{samples.loc[duplicated, 'sample_id'].unique().tolist()}"
        )
        samples = samples[~duplicated]

    count_columns = set(counts.columns)
    matched = samples['sample_id'].isin(count_columns)
    n_unmatched_meta = int((~matched).sum())
    samples = samples[matched]

    if samples.empty:
        example = list(counts.columns[:3])
        raise ReconciliationError(
            f"No samples to analyze: none of the {len(records)} metadata records match "
            f"the {counts.shape[1]} count matrix columns (e.g. {example}); "
            f"check the sample key rule {key_rule!r}"
        )

    samples = samples.set_index('sample_id')
    samples.index.name = 'sample_id'
    aligned_counts = counts.loc[:, list(samples.index)].copy()

    n_unmatched_counts = counts.shape[1] - aligned_counts.shape[1]
    logger.info(
        f"Reconciled {len(samples)} samples "
        f"({n_unmatched_meta} metadata records and {n_unmatched_counts} count columns unmatched)"
    )
    for label, n in samples['condition'].value_counts(sort=False).items():
        logger.info(f"  {label}: {n} samples")

    return AlignedDataset(counts=aligned_counts, samples=samples)
