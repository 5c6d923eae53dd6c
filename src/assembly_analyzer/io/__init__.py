"""Adapters for assembly files and external tools."""
