"""Payment aggregate, transaction ledger and reconciliation."""
