"""Bank statement import and reconciliation engine."""
