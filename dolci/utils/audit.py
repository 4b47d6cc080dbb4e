from __future__ import annotations

import json

from dolci.extensions import db
from dolci.models import AuditLog


def record(action: str, *, actor: str = "system", target_type: str | None = None, target_id: int | None = None, **meta) -> AuditLog:
    """Stage an audit row in the current transaction."""
    row = AuditLog(
        actor=str(actor or "system")[:64],
        action=action[:64],
        target_type=target_type,
        target_id=int(target_id) if target_id is not None else None,
        meta=json.dumps(meta, default=str),
    )
    db.session.add(row)
    return row
