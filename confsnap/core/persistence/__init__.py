"""Snapshot directories and the audit ledger."""
