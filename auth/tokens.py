"""
auth/tokens.py -- Token Issuer: access/refresh pairs and the rotation state machine.

Security design decisions:
  Access tokens: python-jose with HS256. Claims are sub (user id as string),
       email, name, jti, iss, aud, iat and exp. Verification raises
       TokenInvalid on any failure without saying which check failed; the
       route layer turns that into a 401.

  Refresh tokens: secrets.token_urlsafe(64) gives 512 bits of entropy. We
       store HMAC-SHA256(SECRET_KEY, raw) so lookup is O(1) through the unique
       index and a leaked database alone cannot be replayed. The raw value is
       returned once inside the TokenPair and never persisted or logged.

  Rotation: every refresh retires the presented link and issues a successor.
       Rotated/revoked tokens presented again are a theft signal: the whole
       family for that user is revoked and TokenReuseDetected is audited.
       The retire-and-issue step is one compare-and-set transaction in the
       store, so of two concurrent refreshes of the same token exactly one
       wins; the loser re-reads the link and takes the reuse path.

  MFA challenge: a separate short-lived JWT signed with MFA_SECRET_KEY and a
       distinct audience ("<audience>:mfa"), carrying purpose="mfa". It is
       never accepted as an access token and vice versa.

  Expiry checks use the injected clock rather than jose's wall-clock check,
  so the whole issuer moves on one notion of "now".

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import NoReturn

from jose import JWTError, jwt

from auth.audit import AuditLog
from auth.errors import MfaChallengeInvalid, RefreshFailed, RefreshFailureKind, TokenInvalid
from auth.models import AuthEventType, RefreshToken, TokenPair, TokenState, User
from auth.store import CredentialStore
from core.config import Settings

logger = logging.getLogger("taskflow.tokens")

_ALGORITHM = "HS256"
_MFA_PURPOSE = "mfa"
_REFRESH_TOKEN_BYTES = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Issues, validates, rotates and revokes token pairs.

    Usage:
        issuer = TokenIssuer(store, audit, settings)
        pair = issuer.issue(user, ip="1.2.3.4", user_agent="curl/8")
        user_id = issuer.validate_access(pair.access_token)
        pair = issuer.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditLog,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._secret_key = settings.secret_key
        self._mfa_secret_key = settings.mfa_secret_key or settings.secret_key
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._mfa_audience = f"{settings.jwt_audience}:mfa"
        self._access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self._refresh_ttl = timedelta(days=settings.refresh_token_expire_days)
        self._mfa_ttl = timedelta(minutes=settings.mfa_token_expire_minutes)
        self._retention = timedelta(days=settings.refresh_token_retention_days)
        self._clock = clock

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def hash_refresh_token(self, raw: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
        return hmac.new(self._secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(self, user: User, ip: str | None = None, user_agent: str | None = None) -> TokenPair:
        """Mint a new access token and the first link of a new refresh family."""
        now = self._clock()
        access_token, access_expires = self._encode_access(user, now)
        raw, link = self._new_link(user.id, now, ip, user_agent)
        link.id = self._store.create_refresh_token(link)
        logger.info("Issued token pair for user %s (refresh id %s)", user.id, link.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=raw,
            access_expires_at=access_expires,
            refresh_expires_at=link.expires_at,
        )

    def _encode_access(self, user: User, now: datetime) -> tuple[str, datetime]:
        expires = now + self._access_ttl
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "name": user.name,
            "jti": uuid.uuid4().hex,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM), expires

    def _new_link(
        self, user_id: int, now: datetime, ip: str | None, user_agent: str | None
    ) -> tuple[str, RefreshToken]:
        raw = secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)
        link = RefreshToken(
            user_id=user_id,
            token_hash=self.hash_refresh_token(raw),
            created_at=now,
            expires_at=now + self._refresh_ttl,
            ip_address=ip,
            user_agent=user_agent,
        )
        return raw, link

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_access(self, token: str) -> int:
        """Return the user id carried by a valid access token. Raises TokenInvalid."""
        payload = self._decode(token, self._secret_key, self._audience)
        if payload is None or "purpose" in payload:
            raise TokenInvalid()
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid() from None

    def _decode(self, token: str, key: str, audience: str) -> dict | None:
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=self._issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or self._clock().timestamp() >= exp:
            return None
        return payload

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def refresh(self, raw: str, ip: str | None = None, user_agent: str | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair, retiring the presented link.

        Raises RefreshFailed with kind not_found, reused, expired or
        user_inactive. The client-visible message is the same for all kinds.
        """
        now = self._clock()
        link = self._store.get_refresh_token_by_hash(self.hash_refresh_token(raw)) if raw else None
        if link is None:
            self._fail(RefreshFailureKind.NOT_FOUND, None, ip, user_agent)

        state = link.state(now)
        if state in (TokenState.ROTATED, TokenState.REVOKED):
            self._reuse_detected(link, now, ip, user_agent)
        if state is TokenState.EXPIRED:
            self._fail(RefreshFailureKind.EXPIRED, link.user_id, ip, user_agent)

        user = self._store.get_user_by_id(link.user_id)
        if user is None or not user.is_active:
            self._fail(RefreshFailureKind.USER_INACTIVE, link.user_id, ip, user_agent)

        access_token, access_expires = self._encode_access(user, now)
        raw_successor, successor = self._new_link(user.id, now, ip, user_agent)
        successor_id = self._store.rotate_refresh_token(link.id, successor, now)
        if successor_id is None:
            # Lost the race: someone retired this link between our read and write.
            current = self._store.get_refresh_token(link.id)
            if current is None:
                self._fail(RefreshFailureKind.NOT_FOUND, link.user_id, ip, user_agent)
            if current.state(now) in (TokenState.ROTATED, TokenState.REVOKED):
                self._reuse_detected(current, now, ip, user_agent)
            self._fail(RefreshFailureKind.EXPIRED, link.user_id, ip, user_agent)

        self._audit.record(
            AuthEventType.TOKEN_REFRESH,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"token_id": link.id, "replaced_by": successor_id},
        )
        logger.info("Rotated refresh token %s -> %s for user %s", link.id, successor_id, user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=raw_successor,
            access_expires_at=access_expires,
            refresh_expires_at=successor.expires_at,
        )

    def _fail(self, kind: RefreshFailureKind, user_id: int | None, ip: str | None, user_agent: str | None) -> NoReturn:
        logger.info("Refresh failed (%s) for user %s ip=%s", kind.value, user_id, ip)
        self._audit.record(
            AuthEventType.TOKEN_REFRESH_FAILED,
            False,
            user_id=user_id,
            failure_reason=kind.value,
            ip=ip,
            user_agent=user_agent,
        )
        raise RefreshFailed(kind)

    def _reuse_detected(self, link: RefreshToken, now: datetime, ip: str | None, user_agent: str | None) -> NoReturn:
        revoked = self._store.revoke_all_user_tokens(link.user_id, now)
        logger.warning(
            "Refresh token reuse detected for user %s (token %s); revoked %d tokens",
            link.user_id,
            link.id,
            revoked,
        )
        user = self._store.get_user_by_id(link.user_id)
        self._audit.record(
            AuthEventType.TOKEN_REUSE_DETECTED,
            False,
            user_id=link.user_id,
            email=user.email if user else None,
            failure_reason="Refresh token reuse detected",
            ip=ip,
            user_agent=user_agent,
            metadata={"token_id": link.id, "revoked_count": revoked},
        )
        raise RefreshFailed(RefreshFailureKind.REUSED)

    # ------------------------------------------------------------------
    # Revocation and retention
    # ------------------------------------------------------------------

    def lookup(self, raw_or_hashed: str) -> RefreshToken | None:
        """Find a refresh token by its raw value, or by its stored hash."""
        if not raw_or_hashed:
            return None
        link = self._store.get_refresh_token_by_hash(self.hash_refresh_token(raw_or_hashed))
        if link is None:
            link = self._store.get_refresh_token_by_hash(raw_or_hashed)
        return link

    def revoke(self, raw_or_hashed: str) -> bool:
        """Revoke one refresh token. Idempotent; True only when this call revoked it."""
        link = self.lookup(raw_or_hashed)
        if link is None:
            return False
        return self._store.revoke_refresh_token(link.id, self._clock())

    def revoke_all_for_user(self, user_id: int) -> int:
        return self._store.revoke_all_user_tokens(user_id, self._clock())

    def active_sessions(self, user_id: int) -> list[RefreshToken]:
        return self._store.list_active_tokens(user_id, self._clock())

    def purge_expired(self) -> int:
        """Delete tokens that expired longer ago than the retention window."""
        return self._store.delete_tokens_expired_before(self._clock() - self._retention)

    # ------------------------------------------------------------------
    # MFA challenge
    # ------------------------------------------------------------------

    def issue_mfa_challenge(self, user: User) -> str:
        now = self._clock()
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "purpose": _MFA_PURPOSE,
            "jti": uuid.uuid4().hex,
            "iss": self._issuer,
            "aud": self._mfa_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self._mfa_ttl).timestamp()),
        }
        return jwt.encode(claims, self._mfa_secret_key, algorithm=_ALGORITHM)

    def validate_mfa_challenge(self, token: str) -> int:
        """Return the user id of a valid MFA challenge token. Raises MfaChallengeInvalid."""
        payload = self._decode(token, self._mfa_secret_key, self._mfa_audience)
        if payload is None or payload.get("purpose") != _MFA_PURPOSE:
            raise MfaChallengeInvalid()
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise MfaChallengeInvalid() from None
