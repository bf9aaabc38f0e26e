"""
codegraph_kb: turn a source tree into a queryable, generation-versioned
code graph.

Layers:
  extraction   tree-sitter entity extraction per language
  ingestion    parallel extraction, reference resolution, atomic store write
  query        five progressively more expensive retrieval strategies
  clustering   semantic clusters over a weighted affinity graph
  context      token-budgeted context packs for a task
"""

__version__ = "0.3.0"
