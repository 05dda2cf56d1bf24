"""Job submission, reconciliation and artifact saving against the image provider."""
