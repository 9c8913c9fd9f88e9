"""Pipeline configuration and column mapping table loading."""
