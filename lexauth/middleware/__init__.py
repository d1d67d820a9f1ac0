"""HTTP middleware and monitoring integrations."""
