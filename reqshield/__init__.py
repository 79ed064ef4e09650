"""Request security pipeline."""
