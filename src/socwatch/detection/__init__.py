"""Detection rules and the rule dispatcher."""
