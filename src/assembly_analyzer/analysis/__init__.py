"""Identity keys, call extraction and resolution, listings and reports."""
