from __future__ import annotations

from flask import Blueprint, jsonify, request

from dolci import escrow
from dolci.auth import current_identity
from dolci.extensions import db
from dolci.models import AccountKind, WalletAccount
from dolci.utils import ledger

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallet")

_ROLE_KINDS = {"customer": AccountKind.CUSTOMER, "owner": AccountKind.OWNER}


def _owns(ident, account: WalletAccount) -> bool:
    if ident.is_staff:
        return True
    return _ROLE_KINDS.get(ident.role) == account.kind and int(account.owner_ref) == ident.id


def _visible_account(account_id: int):
    ident = current_identity()
    if not ident:
        return None, (jsonify({"ok": False, "message": "Unauthorized"}), 401)
    account = db.session.get(WalletAccount, account_id)
    if not account or not _owns(ident, account):
        return None, (jsonify({"ok": False, "message": "Not found"}), 404)
    return account, None


@wallets_bp.get("/accounts")
def my_accounts():
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    kind = _ROLE_KINDS.get(ident.role)
    if not kind:
        return jsonify({"ok": True, "items": []}), 200
    rows = WalletAccount.query.filter_by(kind=kind, owner_ref=ident.id).order_by(WalletAccount.id.asc()).all()
    return jsonify({"ok": True, "items": [a.to_dict() for a in rows]}), 200


@wallets_bp.get("/<int:account_id>/balance")
def account_balance(account_id: int):
    account, err = _visible_account(account_id)
    if err:
        return err
    return jsonify({
        "ok": True,
        "account": account.to_dict(),
        "balance": str(ledger.balance(account.id)),
        "currency": account.currency,
    }), 200


@wallets_bp.get("/<int:account_id>/transactions")
def account_transactions(account_id: int):
    account, err = _visible_account(account_id)
    if err:
        return err
    try:
        limit = int(request.args.get("limit") or 50)
        offset = int(request.args.get("offset") or 0)
    except ValueError:
        return jsonify({"ok": False, "message": "limit and offset must be integers"}), 400
    rows = ledger.transactions_for(account.id, limit=limit, offset=offset)
    return jsonify({"ok": True, "items": [t.to_dict() for t in rows]}), 200


@wallets_bp.post("/recharge")
def recharge():
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    if ident.role != "customer":
        return jsonify({"ok": False, "message": "Only customers can recharge a wallet"}), 403
    data = request.get_json(silent=True) or {}
    txn = escrow.start_recharge(ident.id, data.get("amount"), data.get("currency"))
    return jsonify({"ok": True, "transaction": txn.to_dict()}), 201
