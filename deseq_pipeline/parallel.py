"""
Block-parallel execution of per-gene computations.

Per-gene stages only read their own rows plus shared, already finalized
inputs (size factors, design, dispersion trend), so the gene axis is split
into contiguous blocks and mapped over a process pool. Results are
reassembled in block order, which keeps the output identical to a serial
run.
"""

import logging
from concurrent.futures import ProcessPoolExecutor
from functools import partial
from typing import Any, Callable, List, Sequence, Tuple
import numpy as np

logger = logging.getLogger(__name__)

def gene_blocks(n_genes: int, block_size: int) -> List[Tuple[int, int]]:
    """Contiguous (start, stop) row ranges covering ``n_genes`` rows."""
    return [(start, min(start + block_size, n_genes)) for start in range(0, n_genes, block_size)]

def _call_block(func: Callable, block_arrays: Sequence[np.ndarray]):
    return func(*block_arrays)

def map_gene_blocks(
    func: Callable[..., Tuple[np.ndarray, ...]],
    arrays: Sequence[np.ndarray],
    n_jobs: int = 1,
    block_size: int = 1000,
    **shared: Any
) -> Tuple[np.ndarray, ...]:
    """
    Apply ``func`` to row blocks of ``arrays`` and concatenate the results.

    Args:
        func: Module-level function taking the row-sliced arrays positionally
            and ``shared`` as keywords; returns a tuple of per-gene arrays
        arrays: Arrays sharing the same first (gene) dimension
        n_jobs: Worker processes; 1 runs inline
        block_size: Genes per task
        **shared: Read-only inputs passed unchanged to every call

    Returns:
        Tuple of arrays concatenated along the gene axis
    """
    n_genes = len(arrays[0])
    bound = partial(func, **shared)

    if n_genes == 0:
        return bound(*arrays)

    blocks = [
        [a[start:stop] for a in arrays]
        for start, stop in gene_blocks(n_genes, block_size)
    ]

    if n_jobs == 1 or len(blocks) == 1:
        results = [bound(*block) for block in blocks]
    else:
        workers = min(n_jobs, len(blocks))
        logger.debug(f"Running {func.__name__} on {len(blocks)} blocks with {workers} workers")
        with ProcessPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(partial(_call_block, bound), blocks))

    return tuple(np.concatenate(parts) for parts in zip(*results))
