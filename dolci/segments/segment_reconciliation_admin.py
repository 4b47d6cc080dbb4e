from __future__ import annotations

from flask import Blueprint, jsonify, request

from dolci.auth import require_roles
from dolci.jobs.stay_completion import complete_finished_stays
from dolci.jobs.token_sweeper import sweep_tokens
from dolci.jobs.wallet_reconciler import reconcile_wallets

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin")


def _limit(default: int = 500) -> int:
    data = request.get_json(silent=True) or {}
    try:
        return max(1, int(data.get("limit") or default))
    except (TypeError, ValueError):
        return default


@recon_bp.post("/reconcile")
@require_roles("admin")
def run_recon():
    res = reconcile_wallets(limit=_limit())
    return jsonify({"ok": True, **res}), 200


@recon_bp.post("/tokens/sweep")
@require_roles("admin")
def run_token_sweep():
    res = sweep_tokens()
    return jsonify({"ok": True, **res}), 200


@recon_bp.post("/stays/complete")
@require_roles("admin")
def run_stay_completion():
    res = complete_finished_stays(limit=_limit())
    return jsonify({"ok": True, **res}), 200
