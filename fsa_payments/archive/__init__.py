"""Partitioned Parquet archive: writer, county crosswalk, sync."""
