"""
Login, token refresh, logout and per-request token verification.

Each login opens a server-side session row holding a SHA-256 digest of the
refresh token; access tokens carry its id as ``sid``. Refresh rotates the
session. Every authenticated request re-reads the session and the user, so
logout, deactivation and role changes apply from the next request on.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..core.auth import UserContext
from ..core.errors import AppError, AuthError
from ..core.security import (
    TokenExpiredError,
    TokenInvalidError,
    TokenSigner,
    hash_password,
    hash_token,
    needs_rehash,
    validate_password_strength,
    verify_password,
)
from ..models import AuthSession, User, utcnow
from .audit import AuditAction, AuditLogger
from .permissions import resolve_user_permissions, resolve_user_roles

logger = logging.getLogger("auth")

_dummy_hash: str | None = None


def _burn_verify(password: str) -> None:
    # Unknown identifiers still pay for one hash verification.
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password(uuid.uuid4().hex)
    verify_password(password or "x", _dummy_hash)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    user: User
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    token_type: str = "Bearer"

    def tokens(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
            "tokenType": self.token_type,
        }


class Authenticator:
    def __init__(self, signer: TokenSigner, audit: AuditLogger) -> None:
        self.signer = signer
        self.audit = audit

    def _find_by_identifier(self, db: Session, identifier: str) -> User | None:
        ident = (identifier or "").strip().lower()
        if not ident:
            return None
        return (
            db.query(User)
            .filter(or_(func.lower(User.email) == ident, func.lower(User.username) == ident))
            .first()
        )

    def _issue(
        self,
        db: Session,
        user: User,
        *,
        ip_address: str | None,
        user_agent: str | None,
        now: datetime.datetime | None = None,
    ) -> TokenPair:
        now_utc = now or datetime.datetime.now(datetime.timezone.utc)
        session_id = str(uuid.uuid4())
        roles = resolve_user_roles(db, user.id)
        permissions = sorted(resolve_user_permissions(db, user.id))
        refresh_token = self.signer.create_refresh_token(user_id=user.id, session_id=session_id, now=now_utc)
        access_token = self.signer.create_access_token(
            user_id=user.id,
            email=user.email,
            username=user.username,
            roles=roles,
            permissions=permissions,
            session_id=session_id,
            now=now_utc,
        )
        db.add(
            AuthSession(
                id=session_id,
                user_id=user.id,
                refresh_token_hash=hash_token(refresh_token),
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
                expires_at=now_utc.replace(tzinfo=None) + datetime.timedelta(seconds=self.signer.refresh_ttl),
                last_used_at=now_utc.replace(tzinfo=None),
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.signer.access_ttl,
            session_id=session_id,
            user=user,
            roles=roles,
            permissions=permissions,
        )

    def login(
        self,
        db: Session,
        identifier: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        user = self._find_by_identifier(db, identifier)
        reason = None
        if user is None:
            _burn_verify(password)
            reason = "unknown_user"
        elif not verify_password(password, user.password_hash):
            reason = "bad_password"
        elif not user.is_active:
            reason = "inactive"

        if reason is not None:
            logger.info("Login failed identifier=%s reason=%s ip=%s", identifier, reason, ip_address)
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                user_id=user.id if user is not None else None,
                details={"identifier": identifier, "reason": reason},
                status="failure",
                error_message="Invalid credentials",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthError(AuthError.INVALID_CREDENTIALS)

        if needs_rehash(user.password_hash):
            user.password_hash = hash_password(password)
            logger.info("Upgraded password hash for user_id=%s", user.id)
        user.last_login_at = utcnow()
        pair = self._issue(db, user, ip_address=ip_address, user_agent=user_agent)
        db.commit()

        self.audit.record(
            AuditAction.LOGIN,
            user_id=user.id,
            details={"sessionId": pair.session_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair

    def _decode(self, token: str, expected_type: str) -> dict:
        try:
            return self.signer.decode(token, expected_type=expected_type)
        except TokenExpiredError as exc:
            raise AuthError(AuthError.TOKEN_EXPIRED) from exc
        except TokenInvalidError as exc:
            raise AuthError(AuthError.TOKEN_INVALID) from exc

    def refresh(
        self,
        db: Session,
        refresh_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        claims = self._decode(refresh_token, "refresh")
        session = db.get(AuthSession, claims["sid"])
        if (
            session is None
            or session.user_id != claims["sub"]
            or session.refresh_token_hash != hash_token(refresh_token)
        ):
            raise AuthError(AuthError.TOKEN_INVALID)
        if session.is_revoked:
            raise AuthError(AuthError.TOKEN_INVALID, "Refresh token has been revoked")
        now = utcnow()
        if session.expires_at <= now:
            raise AuthError(AuthError.TOKEN_EXPIRED)
        user = db.get(User, session.user_id)
        if user is None or not user.is_active:
            raise AuthError(AuthError.TOKEN_INVALID, "User not found or inactive")

        session.revoked_at = now
        pair = self._issue(
            db,
            user,
            ip_address=ip_address or session.ip_address,
            user_agent=user_agent or session.user_agent,
        )
        db.commit()
        return pair

    def logout(
        self,
        db: Session,
        *,
        session_id: str | None = None,
        refresh_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Revoke one session, identified by id or by its refresh token."""
        session = None
        if session_id:
            session = db.get(AuthSession, session_id)
        elif refresh_token:
            session = (
                db.query(AuthSession)
                .filter(AuthSession.refresh_token_hash == hash_token(refresh_token))
                .first()
            )
        if session is None:
            return False
        revoked = False
        if not session.is_revoked:
            session.revoked_at = utcnow()
            db.commit()
            revoked = True
        self.audit.record(
            AuditAction.LOGOUT,
            user_id=session.user_id,
            details={"sessionId": session.id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return revoked

    def revoke_all_sessions(self, db: Session, user_id: str) -> int:
        now = utcnow()
        count = (
            db.query(AuthSession)
            .filter(AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None))
            .update({AuthSession.revoked_at: now}, synchronize_session="fetch")
        )
        db.commit()
        return count

    def logout_all(
        self,
        db: Session,
        user_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        count = self.revoke_all_sessions(db, user_id)
        self.audit.record(
            AuditAction.LOGOUT,
            user_id=user_id,
            details={"allSessions": True, "revoked": count},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return count

    def change_password(
        self,
        db: Session,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        strength = validate_password_strength(new_password)
        if not strength["valid"]:
            raise AppError.bad_request("Password does not meet requirements", {"errors": strength["errors"]})

        user = db.get(User, user_id)
        if user is None or not verify_password(current_password, user.password_hash):
            self.audit.record(
                AuditAction.PASSWORD_CHANGE,
                user_id=user_id,
                status="failure",
                error_message="Invalid current password",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthError(AuthError.INVALID_CREDENTIALS, "Current password is incorrect")

        user.password_hash = hash_password(new_password)
        user.password_changed_at = utcnow()
        db.commit()
        self.audit.record(
            AuditAction.PASSWORD_CHANGE,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.revoke_all_sessions(db, user_id)

    def authenticate(self, db: Session, access_token: str) -> UserContext:
        claims = self._decode(access_token, "access")
        session = db.get(AuthSession, claims["sid"])
        if session is None or session.user_id != claims["sub"]:
            raise AuthError(AuthError.TOKEN_INVALID)
        if session.is_revoked:
            raise AuthError(AuthError.SESSION_REVOKED)
        user = db.get(User, claims["sub"])
        if user is None or not user.is_active:
            raise AuthError(AuthError.TOKEN_INVALID, "User not found or inactive")
        return UserContext(
            user_id=user.id,
            email=user.email,
            username=user.username,
            display_name=user.display_name,
            session_id=session.id,
            roles=resolve_user_roles(db, user.id),
            permissions=resolve_user_permissions(db, user.id),
        )
