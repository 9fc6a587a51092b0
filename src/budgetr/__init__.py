"""Budgetr - time budget ledger with auto-sync to a remote backup."""

__version__ = "0.1.0"
