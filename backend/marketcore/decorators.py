# Overview: Request decorators for API routes (identity, roles, cron secret).

import hmac
import math
from functools import wraps

from flask import current_app, g, jsonify, request

from .services import audit_service, identity_service, rate_limit_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and g.current_user is not None


def require_auth(f):
    """
    Require an upstream-verified identity.

    The identity gateway in front of this service verifies the session and
    forwards the subject in headers:
    - X-User-Id (required): stable subject id
    - X-User-Email, X-User-Name, X-User-Avatar (optional claims)

    Sets g.current_user to the local User (provisioned on first sight).

    SECURITY: Returns 401 when no subject is forwarded. Mutating routes
    never run anonymously.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        subject = (request.headers.get("X-User-Id") or "").strip()
        if not subject:
            return jsonify({"error": "Authentication required", "code": "not_authenticated"}), 401

        g.current_user = identity_service.get_or_create_user(
            external_id=subject,
            email=request.headers.get("X-User-Email"),
            name=request.headers.get("X-User-Name"),
            avatar_url=request.headers.get("X-User-Avatar"),
        )
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """
    Require one of the given roles. Admins pass every role check.

    Must be stacked under @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required", "code": "not_authenticated"}), 401

            user = g.current_user
            if user.is_admin or user.role in roles:
                return f(*args, **kwargs)

            return jsonify({
                "error": "Permission denied",
                "code": "unauthorized",
                "required_role": list(roles),
            }), 403

        return decorated_function
    return decorator


def require_cron_secret(f):
    """
    Guard maintenance endpoints with the shared CRON_SECRET.

    SECURITY: constant-time compare on bytes, so non-ASCII input is just a
    mismatch; an unset secret refuses everything.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        provided = request.headers.get("X-Cron-Secret") or ""
        if not expected or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return jsonify({"error": "Unauthorized", "code": "not_authenticated"}), 401
        return f(*args, **kwargs)

    return decorated_function


def rate_limit(scope: str, limit_setting: str, *, audit_action: str, per_user: bool = False):
    """
    Throttle a route with the in-process sliding-window limiter.

    Buckets are keyed per authenticated user (per_user=True, stacked under
    @require_auth) or per client address. A refused request gets 429 with
    Retry-After and a "rate_limited" row in the payment audit trail.

    Args:
        scope: bucket prefix, e.g. "webhook"
        limit_setting: config key holding the per-minute limit
        audit_action: audit trail action for refused requests
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            ip_address = audit_service.client_ip()
            user_id = g.current_user.id if per_user and _is_authenticated() else None
            identity = f"user:{user_id}" if user_id is not None else (ip_address or "unknown")

            result = rate_limit_service.limiter.check(
                f"{scope}:{identity}",
                current_app.config.get(limit_setting, 0),
            )
            if result.allowed:
                return f(*args, **kwargs)

            current_app.logger.warning("Rate limit exceeded for %s (%s)", scope, identity)
            audit_service.record(
                audit_action,
                "rate_limited",
                user_id=user_id,
                metadata={"scope": scope, "ip": ip_address},
                error="Rate limit exceeded",
            )
            retry_after = max(1, math.ceil(result.retry_after_seconds))
            response = jsonify({
                "error": "Too many requests",
                "code": "rate_limited",
                "retry_after": retry_after,
            })
            response.status_code = 429
            response.headers["Retry-After"] = str(retry_after)
            return response

        return decorated_function
    return decorator
