"""Command line interface (``python -m sheet_migrate.cli``)."""
