from __future__ import annotations

from decimal import Decimal

from flask import current_app

from dolci.models import CommissionRule
from dolci.utils.money import ZERO, to_money


def compute_commission(amount, rate) -> Decimal:
    a = max(to_money(amount), ZERO)
    r = Decimal(str(rate or 0))
    if r < 0:
        r = Decimal("0")
    if r > 1:
        r = Decimal("1")
    return min(to_money(a * r), a)


def resolve_rate(bookable_type: str = "", owner_id: int | None = None) -> Decimal:
    """Resolve commission rate: DB rule (most specific) -> COMMISSION_RATE."""
    t = (bookable_type or "").strip().upper()
    q = CommissionRule.query.filter_by(is_active=True)
    platform_wide = CommissionRule.bookable_type.is_(None) | (CommissionRule.bookable_type == "")

    # Most specific: owner+type
    if owner_id and t:
        r = q.filter_by(owner_id=int(owner_id), bookable_type=t).first()
        if r:
            return Decimal(str(r.rate))

    # Next: owner (any type)
    if owner_id:
        r = q.filter(CommissionRule.owner_id == int(owner_id), platform_wide).first()
        if r:
            return Decimal(str(r.rate))

    # Next: type (any owner)
    if t:
        r = q.filter(CommissionRule.owner_id.is_(None), CommissionRule.bookable_type == t).first()
        if r:
            return Decimal(str(r.rate))

    # Platform-wide rule
    r = q.filter(CommissionRule.owner_id.is_(None), platform_wide).order_by(CommissionRule.id.desc()).first()
    if r:
        return Decimal(str(r.rate))

    return Decimal(str(current_app.config.get("COMMISSION_RATE", 0.05)))


def default_commission_policy(booking, payment) -> Decimal:
    return compute_commission(payment.amount, resolve_rate(booking.bookable_type, booking.owner_id))


def commission_for(booking, payment) -> Decimal:
    """Platform share of a release. Apps may set COMMISSION_POLICY to a callable(booking, payment)."""
    policy = current_app.config.get("COMMISSION_POLICY") or default_commission_policy
    return max(ZERO, min(to_money(policy(booking, payment)), to_money(payment.amount)))
