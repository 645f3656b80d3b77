"""Small standalone utilities."""
