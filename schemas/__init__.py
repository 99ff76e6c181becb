"""
Pydantic schemas for data validation and serialization.

Schemas:
    records: Validated record schemas, one per EntityKind
    checkpoint: Versioned checkpoint document and read result
    api: Control API request/response schemas (camelCase on the wire)

Usage:
    from schemas.records import PlayerRecord
    from schemas.checkpoint import CheckpointState
    from schemas.api import StatusResponse, TriggerRequest
"""

__all__ = [
    "records",
    "checkpoint",
    "api",
]
