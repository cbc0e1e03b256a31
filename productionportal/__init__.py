"""ProductionPortal: daily production tracking for garment factories."""

__version__ = "1.0.0"
