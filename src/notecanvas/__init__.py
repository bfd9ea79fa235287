"""notecanvas: an AI-assisted visual note-taking canvas core."""

__all__ = ["__version__"]

__version__ = "0.3.0"
