# Overview: Local mirror of identity-provider subjects.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Business, User
from ..models.users import VALID_ROLES
from ..validation import NotFound, ValidationError


def get_or_create_user(
    *,
    external_id: str,
    email: str | None = None,
    name: str | None = None,
    avatar_url: str | None = None,
) -> User:
    """
    Resolve the local user for an identity subject, creating it on first use.

    Claims from the identity provider refresh the stored profile. Two first
    requests racing on the same subject converge on one row.
    """
    user = db.session.query(User).filter_by(external_id=external_id).first()
    if user is None:
        user = User(external_id=external_id, email=email, name=name, avatar_url=avatar_url)
        db.session.add(user)
        try:
            db.session.commit()
            return user
        except IntegrityError:
            db.session.rollback()
            user = db.session.query(User).filter_by(external_id=external_id).one()

    changed = False
    for field, value in (("email", email), ("name", name), ("avatar_url", avatar_url)):
        if value and getattr(user, field) != value:
            setattr(user, field, value)
            changed = True
    if changed:
        db.session.commit()
    return user


def set_role(user_id: int, role: str) -> User:
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}. Must be one of {list(VALID_ROLES)}")
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound(f"User {user_id} not found")
    user.role = role
    db.session.commit()
    return user


def register_business(owner_id: int, name: str) -> Business:
    """Mirror a business registered upstream so plans and subscriptions can attach to it."""
    if not name or not name.strip():
        raise ValidationError("Business name is required")
    owner = db.session.get(User, owner_id)
    if not owner:
        raise NotFound(f"User {owner_id} not found")
    business = Business(owner_id=owner.id, name=name.strip())
    db.session.add(business)
    db.session.commit()
    return business
