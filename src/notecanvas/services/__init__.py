"""Supporting services: settings and caching."""
