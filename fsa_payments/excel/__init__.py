"""Spreadsheet reading and cell-level coercion."""
