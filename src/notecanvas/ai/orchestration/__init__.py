"""Streaming chat orchestration: decoding, tool-call assembly and turn control."""
