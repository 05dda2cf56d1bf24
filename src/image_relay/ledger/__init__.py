"""Client-side task ledger that survives restarts, plus its reconcile driver."""
