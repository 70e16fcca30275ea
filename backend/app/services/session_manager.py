"""Identity session manager: authenticated sessions keyed by opaque ids."""

import asyncio
import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import db_session
from app.models.auth_session import AuthSession
from app.models.identity import AuthenticatedSession, IdentityClaims, TokenSet, as_utc
from app.services.oidc_errors import IdentityMismatchError, OIDCError, SessionNotFoundError
from app.services.token_client import OIDCTokenClient
from app.utils.log_redaction import sanitize_for_log

logger = logging.getLogger(__name__)


def hash_session_id(session_id: str) -> str:
    """SHA-256 of the session id; the only form that is persisted."""
    return hashlib.sha256(session_id.encode()).hexdigest()


class IdentitySessionManager:
    """Creates, loads, refreshes and destroys authenticated sessions.

    A session lives until the earlier of its absolute cap
    (``session_ttl_seconds``) and its access token's expiry. An expired access
    token is renewed with the refresh token when one was issued; otherwise the
    session ends.
    """

    def __init__(
        self,
        token_client: OIDCTokenClient,
        *,
        session_ttl_seconds: int = 86400,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = db_session,
    ):
        self.token_client = token_client
        self.session_ttl_seconds = session_ttl_seconds
        self._session_factory = session_factory
        # Per-session locks so concurrent requests don't race to redeem one refresh token
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    async def create_session(self, token_set: TokenSet, claims: IdentityClaims) -> str:
        """Persist a new session and return its opaque id."""
        await self.purge_expired()

        session_id = secrets.token_urlsafe(32)
        now = datetime.now(UTC)

        async with self._session_factory() as db:
            db.add(
                AuthSession(
                    id_hash=hash_session_id(session_id),
                    subject=claims.subject,
                    issuer=claims.issuer,
                    claims=claims.raw,
                    access_token=token_set.access_token,
                    token_type=token_set.token_type,
                    id_token=token_set.id_token,
                    refresh_token=token_set.refresh_token,
                    scope=token_set.scope,
                    access_token_expires_at=token_set.expires_at,
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.session_ttl_seconds),
                )
            )
            await db.commit()

        logger.info(
            f"Created session {session_id[:8]}... for subject {sanitize_for_log(claims.subject)}"
        )
        return session_id

    async def get_session(self, session_id: str | None) -> AuthenticatedSession | None:
        """Load a live session, refreshing its tokens when the access token expired.

        Returns:
            The session, or None when unknown, past its cap, or not refreshable
        """
        if not session_id:
            return None

        id_hash = hash_session_id(session_id)
        row = await self._load(id_hash)
        if row is None:
            return None

        now = datetime.now(UTC)
        if now >= as_utc(row.expires_at):
            logger.info(f"Session {session_id[:8]}... reached its maximum lifetime")
            await self._delete(id_hash)
            return None

        session = self._to_session(session_id, row)
        if not session.token_set.is_expired(now):
            return session

        if not session.token_set.refresh_token:
            logger.info(f"Session {session_id[:8]}... expired with its access token")
            await self._delete(id_hash)
            return None

        return await self._refresh(session_id)

    async def refresh_user_info(self, session_id: str | None) -> dict[str, Any]:
        """Fetch the userinfo profile for a session.

        Raises:
            SessionNotFoundError: No live session
            UserInfoError: Provider call failed
            IdentityMismatchError: Userinfo ``sub`` differs from the ID token;
                the session is destroyed before raising
        """
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError("No active session")

        metadata = await self.token_client.resolver.resolve()
        userinfo = await self.token_client.fetch_userinfo(metadata, session.token_set.access_token)

        subject = userinfo.get("sub")
        if subject is None or not hmac.compare_digest(str(subject), session.claims.subject):
            logger.warning(
                f"Userinfo subject {sanitize_for_log(subject)} does not match session subject "
                f"{sanitize_for_log(session.claims.subject)}, forcing logout"
            )
            await self.destroy_session(session_id)
            raise IdentityMismatchError("Userinfo subject does not match ID token subject")

        return userinfo

    async def destroy_session(self, session_id: str | None) -> bool:
        """Delete a session. Returns True if one existed."""
        if not session_id:
            return False
        deleted = await self._delete(hash_session_id(session_id))
        if deleted:
            logger.info(f"Destroyed session {session_id[:8]}...")
        return deleted

    async def purge_expired(self) -> int:
        """Delete sessions that can no longer be used. Returns the number removed.

        A session is dead once past its absolute cap, or once its access token
        has expired with no refresh token to renew it.
        """
        now = datetime.now(UTC)
        dead = or_(
            AuthSession.expires_at <= now,
            and_(
                AuthSession.refresh_token.is_(None),
                AuthSession.access_token_expires_at.is_not(None),
                AuthSession.access_token_expires_at <= now,
            ),
        )

        async with self._session_factory() as db:
            id_hashes = (await db.execute(select(AuthSession.id_hash).where(dead))).scalars().all()
            if not id_hashes:
                return 0
            await db.execute(delete(AuthSession).where(AuthSession.id_hash.in_(id_hashes)))
            await db.commit()

        for id_hash in id_hashes:
            self._refresh_locks.pop(id_hash, None)

        logger.info(f"Cleaned up {len(id_hashes)} expired sessions")
        return len(id_hashes)

    async def _refresh(self, session_id: str) -> AuthenticatedSession | None:
        id_hash = hash_session_id(session_id)
        lock = self._refresh_locks.setdefault(id_hash, asyncio.Lock())

        async with lock:
            # Another request may have refreshed while we waited
            row = await self._load(id_hash)
            if row is None:
                return None
            session = self._to_session(session_id, row)
            if not session.token_set.is_expired():
                return session

            client = self.token_client
            try:
                metadata = await client.resolver.resolve()
                tokens = await client.refresh(metadata, session.token_set.refresh_token)
                token_set = client.build_token_set(tokens, previous=session.token_set)

                claims = session.claims
                if tokens.get("id_token"):
                    verified = await client.verify_id_token(
                        tokens["id_token"],
                        expected_nonce=None,
                        access_token=token_set.access_token,
                    )
                    if str(verified.get("sub")) != session.claims.subject:
                        raise IdentityMismatchError("Refreshed ID token has a different subject")
                    claims = IdentityClaims.from_claims(verified)
            except OIDCError as e:
                logger.warning(f"Session {session_id[:8]}... refresh failed ({e.kind}), ending session")
                await self._delete(id_hash)
                return None

            now = datetime.now(UTC)
            async with self._session_factory() as db:
                row = await db.get(AuthSession, id_hash)
                if row is None:
                    return None
                row.access_token = token_set.access_token
                row.token_type = token_set.token_type
                row.id_token = token_set.id_token
                row.refresh_token = token_set.refresh_token
                row.scope = token_set.scope
                row.access_token_expires_at = token_set.expires_at
                row.claims = claims.raw
                row.refreshed_at = now
                await db.commit()

            logger.info(f"Refreshed tokens for session {session_id[:8]}...")
            session.token_set = token_set
            session.claims = claims
            return session

    async def _load(self, id_hash: str) -> AuthSession | None:
        async with self._session_factory() as db:
            result = await db.execute(select(AuthSession).where(AuthSession.id_hash == id_hash))
            return result.scalar_one_or_none()

    async def _delete(self, id_hash: str) -> bool:
        self._refresh_locks.pop(id_hash, None)
        async with self._session_factory() as db:
            result = await db.execute(delete(AuthSession).where(AuthSession.id_hash == id_hash))
            await db.commit()
        return (result.rowcount or 0) > 0

    @staticmethod
    def _to_session(session_id: str, row: AuthSession) -> AuthenticatedSession:
        token_set = TokenSet(
            access_token=row.access_token,
            token_type=row.token_type,
            id_token=row.id_token,
            refresh_token=row.refresh_token,
            expires_at=as_utc(row.access_token_expires_at) if row.access_token_expires_at else None,
            scope=row.scope,
        )
        return AuthenticatedSession(
            session_id=session_id,
            token_set=token_set,
            claims=IdentityClaims.from_claims(row.claims),
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
        )
