"""Model-facing layer: transports, streaming orchestration and tools."""
