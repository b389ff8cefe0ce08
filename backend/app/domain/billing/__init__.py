"""Stripe billing event ingestion: ledger, handlers and post-commit notices."""
