from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z, utcnow


ROLE_BUYER = "buyer"
ROLE_SELLER = "seller"
ROLE_ADMIN = "admin"
VALID_ROLES = (ROLE_BUYER, ROLE_SELLER, ROLE_ADMIN)


class User(db.Model):
    """
    Local mirror of an identity-provider subject.

    Rows are provisioned lazily on the first authenticated request; the
    identity provider stays the source of truth for email/name/avatar.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(128), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=True)
    name = db.Column(db.String(255), nullable=True)
    avatar_url = db.Column(db.String(512), nullable=True)
    role = db.Column(db.String(16), nullable=False, default=ROLE_BUYER)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def display_name(self) -> str:
        return self.name or self.email or f"user-{self.id}"

    def __repr__(self) -> str:
        return f"<User id={self.id} external_id={self.external_id!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "email": self.email,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "role": self.role,
            "created_at": to_utc_z(self.created_at),
        }


class Business(db.Model):
    """A registered seller business. Subscriptions and plan limits hang off this."""
    __tablename__ = "businesses"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    owner = db.relationship("User", backref=db.backref("businesses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }
