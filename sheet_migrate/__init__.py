"""Staged spreadsheet -> relational import pipeline (ingest, validate, apply, reconcile)."""

__version__ = "0.4.0"
