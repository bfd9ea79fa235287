"""Tool schemas, registry and error types."""
