"""Meeting attendance reconciliation engine."""
