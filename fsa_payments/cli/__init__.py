"""Command line entrypoint (python -m fsa_payments.cli)."""
