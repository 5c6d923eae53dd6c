"""Metadata tables, signature blobs and method bodies."""
