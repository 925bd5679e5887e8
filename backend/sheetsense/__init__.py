"""SheetSense: answer-sheet ingestion, roll-number matching and AI correction reconciliation."""

__version__ = "2.0.0"
