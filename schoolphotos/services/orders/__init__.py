"""Order assembly, persistence and lifecycle."""
