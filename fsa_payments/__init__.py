"""FSA farm payment files -> partitioned Parquet archive."""

__version__ = "0.1.0"
