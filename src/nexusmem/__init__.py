"""Local semantic indexing and context retrieval for project workspaces."""

__version__ = "0.1.0"
