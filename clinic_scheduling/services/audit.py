# clinic_scheduling/services/audit.py
from __future__ import annotations
from typing import Optional

from sqlalchemy.orm import Session

from .. import models


def record(
    session: Session,
    action: str,
    resource_type: str,
    resource_id: Optional[int],
    provider_id: Optional[str] = None,
    actor: Optional[str] = None,
    description: str = "",
) -> None:
    """Adds an audit row to the current transaction. Identifiers only, no PII."""
    session.add(models.AuditEntry(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        provider_id=provider_id,
        actor=actor,
        description=description,
    ))
