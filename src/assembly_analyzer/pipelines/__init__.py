"""End-to-end analysis pipelines."""
