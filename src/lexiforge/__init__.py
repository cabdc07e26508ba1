"""
Lexiforge: resumable parallel batch generation of dictionary entries.

Distributes a word list across a pool of workers, runs each batch through an
unreliable LLM transformer, checkpoints every committed batch to disk and
reconciles the per-chunk results into one consistent dictionary.
"""

__version__ = "0.4.0"
