"""Background processing for the reconciliation queue."""
