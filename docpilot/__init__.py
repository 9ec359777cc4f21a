"""DocPilot: document ingestion and retrieval engine for the IDE assistant."""

__version__ = "0.3.0"
