"""
Utility functions for the DESeq pipeline.

This module provides common utility functions used across the pipeline,
including logging setup, file validation, and metrics helpers.
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Union
import json
import numpy as np
from rich.logging import RichHandler

def setup_logging(level: int = logging.INFO) -> None:
    """
    Set up logging with Rich handler for colored output.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
        force=True
    )

def validate_file_exists(file_path: Union[str, Path]) -> Path:
    """
    Validate that a file exists and return Path object.

    Args:
        file_path: Path to file

    Returns:
        Path object if file exists

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return path

def validate_directory_exists(dir_path: Union[str, Path], create: bool = False) -> Path:
    """
    Validate that a directory exists, optionally create it.

    Args:
        dir_path: Path to directory
        create: Whether to create directory if it doesn't exist

    Returns:
        Path object

    Raises:
        FileNotFoundError: If directory doesn't exist and create=False
    """
    path = Path(dir_path)
    if not path.exists():
        if create:
            path.mkdir(parents=True, exist_ok=True)
        else:
            raise FileNotFoundError(f"Directory not found: {path}")
    return path

def is_gzipped(file_path: Union[str, Path]) -> bool:
    """
    Check if a file is gzipped.

    Args:
        file_path: Path to file

    Returns:
        True if file is gzipped
    """
    with open(file_path, 'rb') as f:
        return f.read(2) == b'\x1f\x8b'

def _json_default(value: Any) -> Any:
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

def save_metrics_json(metrics: Dict[str, Any], output_file: Union[str, Path]) -> None:
    """
    Save metrics dictionary to JSON file.

    Numpy scalars and arrays are converted to plain Python values.

    Args:
        metrics: Dictionary of metrics
        output_file: Output JSON file path
    """
    with open(output_file, 'w') as f:
        json.dump(metrics, f, indent=2, default=_json_default)

def load_metrics_json(json_file: Union[str, Path]) -> Dict[str, Any]:
    """
    Load metrics from JSON file.

    Args:
        json_file: Path to JSON file

    Returns:
        Dictionary of metrics
    """
    with open(json_file, 'r') as f:
        return json.load(f)

def format_number(num: Union[int, float], precision: int = 2) -> str:
    """
    Format number with appropriate precision and units.

    Args:
        num: Number to format
        precision: Decimal precision

    Returns:
        Formatted number string
    """
    if num >= 1e9:
        return f"{num/1e9:.{precision}f}B"
    elif num >= 1e6:
        return f"{num/1e6:.{precision}f}M"
    elif num >= 1e3:
        return f"{num/1e3:.{precision}f}K"
    else:
        return f"{num:.{precision}f}"

def create_output_dirs(base_dir: Path, subdirs: List[str]) -> Dict[str, Path]:
    """
    Create output directory structure.

    Args:
        base_dir: Base output directory
        subdirs: List of subdirectory names

    Returns:
        Dictionary mapping subdir names to Path objects
    """
    dirs = {}

    for subdir in subdirs:
        dir_path = base_dir / subdir
        dir_path.mkdir(parents=True, exist_ok=True)
        dirs[subdir] = dir_path

    return dirs
