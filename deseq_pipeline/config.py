"""
Analysis configuration.

Holds every tunable of a run: how sample metadata is matched to count
columns, significance threshold, dispersion fitting options and
parallelism. Values come from defaults, an optional YAML file and
command-line overrides, in that order.
"""

import logging
from dataclasses import dataclass, fields, asdict, replace
from pathlib import Path
from typing import Optional, Dict, Any, Union
import yaml

from .utils import validate_file_exists

logger = logging.getLogger(__name__)

# Strips a leading GEO sample accession and everything from the first dot,
# e.g. "GSM3507251_T1D_1.txt.gz" -> "T1D_1"
DEFAULT_SAMPLE_KEY_PATTERN = r"^(?:GSM\d+_)?([^.]+)"

FIT_TYPES = ('parametric', 'mean')


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Configuration for a differential expression run.

    Attributes:
        positive_label: Condition token searched (case-insensitive) in the
            condition field; matching samples form the tested group.
        negative_label: Label given to every sample that does not match.
        condition_field: Metadata column holding the free-text description.
        sample_key_field: Metadata column the sample key is derived from.
        sample_key_pattern: Regex with one capture group applied to the
            basename of ``sample_key_field``.
        alpha: Adjusted p-value threshold for significance filtering.
        fit_type: Dispersion trend, ``parametric`` or ``mean``.
        min_disp: Lower bound for dispersion estimates.
        max_disp: Upper bound for dispersion estimates (raised to the
            number of samples when that is larger).
        cooks_cutoff: Cook's distance cutoff; None uses the 0.99 quantile
            of F(p, m - p), 0 disables outlier flagging.
        independent_filtering: Filter low-mean genes before BH correction.
        max_iter: Maximum IRLS iterations per gene GLM fit.
        n_jobs: Worker processes for the per-gene stages.
        block_size: Genes per worker task.
    """

    positive_label: str = "T1D"
    negative_label: str = "Healthy"
    condition_field: str = "title"
    sample_key_field: str = "supplementary_file"
    sample_key_pattern: str = DEFAULT_SAMPLE_KEY_PATTERN
    alpha: float = 0.05
    fit_type: str = "parametric"
    min_disp: float = 1e-8
    max_disp: float = 10.0
    cooks_cutoff: Optional[float] = None
    independent_filtering: bool = True
    max_iter: int = 100
    n_jobs: int = 1
    block_size: int = 1000

    def __post_init__(self):
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.fit_type not in FIT_TYPES:
            raise ValueError(f"fit_type must be one of {FIT_TYPES}, got {self.fit_type!r}")
        if not 0 < self.min_disp < self.max_disp:
            raise ValueError("Dispersion bounds must satisfy 0 < min_disp < max_disp")
        if self.cooks_cutoff is not None and self.cooks_cutoff < 0:
            raise ValueError("cooks_cutoff must be non-negative")
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1")
        if self.n_jobs < 1:
            raise ValueError("n_jobs must be at least 1")
        if self.block_size < 1:
            raise ValueError("block_size must be at least 1")
        if self.positive_label.lower() == self.negative_label.lower():
            raise ValueError("positive_label and negative_label must differ")

    def update(self, **overrides: Any) -> "AnalysisConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(config_file: Optional[Union[str, Path]] = None) -> AnalysisConfig:
    """
    Load analysis configuration from a YAML file.

    Args:
        config_file: YAML file with a mapping of AnalysisConfig fields.
            None returns the defaults.

    Returns:
        AnalysisConfig

    Raises:
        ValueError: If the file is not a mapping or has unknown keys
    """
    if config_file is None:
        return AnalysisConfig()

    path = validate_file_exists(config_file)
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {unknown}")

    logger.debug(f"Loaded config from {path}: {data}")
    return AnalysisConfig(**data)
