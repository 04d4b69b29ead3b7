"""
Actor Context Middleware — resolves who is acting on a request, sets g.actor_id.

This service does no authentication; the acting user is only recorded as
completed_by on progress rows and used as the rate-limit key.

Resolution order:
  1. Authorization: Bearer <JWT>  →  "sub" claim (HS256, JWT_SECRET_KEY)
  2. X-Actor-Id header
  3. None

An invalid or expired token never blocks the request; it is logged and the
header fallback applies.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Paths that never need an actor
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _get_secret() -> str:
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def decode_actor_token(token: str) -> str | None:
    """Return the ``sub`` claim of a valid token.

    Raises:
        jwt.InvalidTokenError (and subclasses) for bad or expired tokens.
    """
    payload = pyjwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    sub = payload.get("sub")
    return str(sub) if sub is not None else None


def encode_actor_token(actor_id: str, **claims) -> str:
    """Issue a token for *actor_id* (used by tests and local tooling)."""
    payload = {"sub": str(actor_id), **claims}
    return pyjwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def resolve_actor() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            actor_id = decode_actor_token(auth_header[7:])
            if actor_id:
                return actor_id
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired actor token on %s %s", request.method, request.path)
        except pyjwt.InvalidTokenError as exc:
            logger.warning("Invalid actor token on %s %s: %s", request.method, request.path, exc)

    header_actor = (request.headers.get("X-Actor-Id") or "").strip()
    return header_actor or None


def init_actor_context(app):
    """Register the actor resolver as a before_request hook."""

    @app.before_request
    def _resolve_actor():
        g.actor_id = None
        path = request.path
        if not path.startswith("/api/v1/"):
            return
        if path.startswith(ACTOR_SKIP_PREFIXES):
            return
        g.actor_id = resolve_actor()
