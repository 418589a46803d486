# webscan/auth/decorators.py

from __future__ import annotations

from functools import wraps
from typing import Callable, Optional

from flask import request, jsonify, g, current_app

from webscan.models import Requester
from .tokens import verify_access_token


def get_bearer_token() -> Optional[str]:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None


def _resolve_requester(token: str):
    rid = verify_access_token(
        secret_key=current_app.config["SECRET_KEY"], token=token
    )
    if not rid:
        return None, (jsonify(error="invalid or expired token", code="UNAUTHORIZED"), 401)

    requester = Requester.query.get(rid)
    if not requester:
        return None, (jsonify(error="requester not found", code="INVALID_REQUESTER"), 401)
    return requester, None


def require_auth(fn: Callable):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = get_bearer_token()
        if not token:
            return jsonify(error="missing Authorization: Bearer <token>", code="UNAUTHORIZED"), 401

        requester, err = _resolve_requester(token)
        if err:
            return err

        g.current_requester = requester
        g.current_requester_id = requester.id
        return fn(*args, **kwargs)

    return wrapper


def optional_auth(fn: Callable):
    """
    Like require_auth, but an absent token means anonymous.
    A token that is present but invalid is still rejected.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        g.current_requester = None
        g.current_requester_id = None

        token = get_bearer_token()
        if token:
            requester, err = _resolve_requester(token)
            if err:
                return err
            g.current_requester = requester
            g.current_requester_id = requester.id

        return fn(*args, **kwargs)

    return wrapper


# ────────────────────────────────────────────────────────────
# Context helpers
# ────────────────────────────────────────────────────────────

def current_requester_id() -> Optional[str]:
    """Requester ID from context, None for anonymous requests."""
    return getattr(g, "current_requester_id", None)
