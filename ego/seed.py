"""
Seed an admin user and an application from environment. No hardcoded credentials.
Optional: EGO_SEED_ADMIN_EMAIL; EGO_SEED_CLIENT_ID + EGO_SEED_CLIENT_SECRET + EGO_SEED_REDIRECT_URIS.
"""
import json
import logging
import os

import bcrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from ego.models import Application, ApplicationType, StatusType, User, UserType

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")[:72]
    return bcrypt.checkpw(raw, hashed.encode("utf-8"))


def seed_from_env(db: Session) -> None:
    """Create one admin user and/or one application from env if set."""
    admin_email = os.environ.get("EGO_SEED_ADMIN_EMAIL")
    if admin_email:
        if db.scalars(select(User).where(User.name == admin_email)).first() is None:
            db.add(
                User(
                    name=admin_email,
                    email=admin_email,
                    status=StatusType.APPROVED,
                    type=UserType.ADMIN,
                )
            )
            db.commit()
            logger.info("Seeded admin user")
        else:
            logger.debug("Admin user already exists")

    # Application: client_id, secret and redirect URI(s) comma-separated; optional error redirect and type
    client_id = os.environ.get("EGO_SEED_CLIENT_ID")
    redirect_uris_str = os.environ.get("EGO_SEED_REDIRECT_URIS")
    client_secret = os.environ.get("EGO_SEED_CLIENT_SECRET")
    if client_id and redirect_uris_str:
        uris = [u.strip() for u in redirect_uris_str.split(",") if u.strip()]
        existing = db.scalars(select(Application).where(Application.client_id == client_id)).first()
        if uris and existing is None:
            app_type = os.environ.get("EGO_SEED_CLIENT_TYPE", ApplicationType.CLIENT.value).upper()
            db.add(
                Application(
                    name=client_id,
                    client_id=client_id,
                    client_secret_hash=hash_password(client_secret) if client_secret else None,
                    redirect_uris=json.dumps(uris),
                    error_redirect_uri=os.environ.get("EGO_SEED_ERROR_REDIRECT_URI") or None,
                    type=ApplicationType(app_type),
                    status=StatusType.APPROVED,
                )
            )
            db.commit()
            logger.info("Seeded application: %s (confidential=%s)", client_id, bool(client_secret))
        elif uris:
            logger.debug("Application already exists: %s", client_id)
