"""Provider adapters for quorum."""
