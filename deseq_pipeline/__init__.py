"""
deseq_pipeline - negative-binomial differential expression for bulk RNA-seq.

Reconciles a raw count matrix with sample metadata, estimates size factors
and shrunken dispersions, runs per-gene Wald tests and reports
Benjamini-Hochberg adjusted results.
"""

__version__ = "1.0.0"
