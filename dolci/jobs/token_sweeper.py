from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update

from dolci.extensions import db
from dolci.models import QRReleaseToken


def sweep_tokens(*, now: datetime | None = None) -> dict:
    """Flag lapsed release tokens and archive old ones.

    Tokens are never deleted: a consumed token is the record of who released
    the funds and when.
    """
    now = now or datetime.utcnow()
    retention = timedelta(days=int(current_app.config.get("QR_TOKEN_RETENTION_DAYS", 90)))

    expired = db.session.execute(
        update(QRReleaseToken)
        .where(
            QRReleaseToken.consumed_at.is_(None),
            QRReleaseToken.expired_at.is_(None),
            QRReleaseToken.expires_at < now,
        )
        .values(expired_at=now),
        execution_options={"synchronize_session": False},
    ).rowcount or 0

    cutoff = now - retention
    archived = db.session.execute(
        update(QRReleaseToken)
        .where(
            QRReleaseToken.archived_at.is_(None),
            or_(QRReleaseToken.consumed_at < cutoff, QRReleaseToken.expired_at < cutoff),
        )
        .values(archived_at=now),
        execution_options={"synchronize_session": False},
    ).rowcount or 0

    db.session.commit()
    if expired or archived:
        current_app.logger.info("token sweep: %s expired, %s archived", expired, archived)
    return {"expired": int(expired), "archived": int(archived)}
