"""HTTP API for browsercron."""
