"""Business services for branches, stock lookups, counts and adjustment requests."""
