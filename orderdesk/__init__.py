"""OrderDesk - spreadsheet order ingestion and buyer confirmation pipeline."""

__version__ = "0.1.0"
