"""Audit trail port.

Implementations must never raise into the caller: a failed audit write is
logged by the adapter and the payment operation still succeeds.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.payments import AuditEntry


@runtime_checkable
class AuditLogger(Protocol):
    async def record(self, entry: AuditEntry) -> None: ...
