"""Read-side queries over the ledger."""
