"""HTTP clients for model providers."""
