"""Resumable Migrator - checkpointed batch migration, identifier mapping and reconciliation."""

__version__ = "0.1.0"

__all__ = [
    "BatchEngine",
    "CheckpointManager",
    "IdentifierMapper",
    "DifferentialComparator",
    "DifferentialStore",
    "ConflictResolver",
    "DatabaseManager",
]
