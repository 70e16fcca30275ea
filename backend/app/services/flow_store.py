"""Flow session store: single-use binding of flow ids to PKCE/state/nonce material.

Two backends share one contract:

- ``InMemoryFlowStore`` for a single process
- ``DatabaseFlowStore`` for deployments with several instances behind a
  load balancer

``consume`` is an atomic check-and-delete in both, so two concurrent
callbacks presenting the same flow id can never both succeed.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import db_session
from app.models.identity import FlowMaterial, FlowState, as_utc
from app.models.oidc_flow import OIDCFlow
from app.services.oidc_errors import AlreadyConsumedError, FlowExpiredError, FlowNotFoundError

logger = logging.getLogger(__name__)


def new_flow_id() -> str:
    """Opaque, unguessable flow id (256-bit)."""
    return secrets.token_urlsafe(32)


class FlowStore(ABC):
    """Abstract flow store.

    Expired flows and tombstones are kept for ``retention_seconds`` past their
    expiry (one TTL by default) before ``purge_expired`` removes them, so a
    late callback still reports ``FlowExpiredError`` rather than
    ``FlowNotFoundError``.
    """

    backend: str = "base"

    def __init__(self, ttl_seconds: int = 600, retention_seconds: int | None = None):
        self.ttl_seconds = ttl_seconds
        self.retention_seconds = ttl_seconds if retention_seconds is None else retention_seconds

    def _purge_cutoff(self, now: datetime) -> datetime:
        """Entries that expired at or before this instant are purged."""
        return now - timedelta(seconds=self.retention_seconds)

    async def create(self, material: FlowMaterial, redirect_uri: str) -> str:
        """Persist flow material and return a new flow id."""
        flow = await self.create_flow(material, redirect_uri)
        return flow.flow_id

    async def create_flow(self, material: FlowMaterial, redirect_uri: str) -> FlowState:
        """Persist flow material and return the stored FlowState."""
        await self.purge_expired()

        now = datetime.now(UTC)
        flow = FlowState(
            flow_id=new_flow_id(),
            code_verifier=material.verifier,
            expected_state=material.state,
            expected_nonce=material.nonce,
            redirect_uri=redirect_uri,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        await self._save(flow)

        logger.debug("Stored OIDC flow: %s...", flow.flow_id[:8])
        return flow

    @abstractmethod
    async def _save(self, flow: FlowState) -> None:
        pass

    @abstractmethod
    async def consume(self, flow_id: str | None) -> FlowState:
        """Return and invalidate the flow.

        Raises:
            FlowNotFoundError: Unknown flow id
            AlreadyConsumedError: Flow was consumed before
            FlowExpiredError: Flow outlived its TTL
        """
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired flows and tombstones. Returns the number removed."""
        pass


class InMemoryFlowStore(FlowStore):
    """Process-local flow store."""

    backend = "memory"

    def __init__(self, ttl_seconds: int = 600, retention_seconds: int | None = None):
        super().__init__(ttl_seconds, retention_seconds)
        self._flows: dict[str, FlowState] = {}
        # flow_id -> original expiry, kept so replays report AlreadyConsumedError
        self._consumed: dict[str, datetime] = {}

    async def _save(self, flow: FlowState) -> None:
        self._flows[flow.flow_id] = flow

    async def consume(self, flow_id: str | None) -> FlowState:
        if not flow_id:
            raise FlowNotFoundError("No flow id presented")

        # No await between lookup and removal: atomic on the event loop
        flow = self._flows.pop(flow_id, None)
        if flow is None:
            if flow_id in self._consumed:
                raise AlreadyConsumedError(f"Flow {flow_id[:8]}... already consumed")
            raise FlowNotFoundError(f"Unknown flow {flow_id[:8]}...")

        if flow.is_expired():
            raise FlowExpiredError(f"Flow {flow_id[:8]}... expired")

        self._consumed[flow_id] = flow.expires_at
        logger.debug("Consumed OIDC flow: %s...", flow_id[:8])
        return flow

    async def purge_expired(self) -> int:
        cutoff = self._purge_cutoff(datetime.now(UTC))
        expired = [fid for fid, flow in self._flows.items() if flow.expires_at <= cutoff]
        for fid in expired:
            self._flows.pop(fid, None)

        stale = [fid for fid, expires_at in self._consumed.items() if expires_at <= cutoff]
        for fid in stale:
            self._consumed.pop(fid, None)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired OIDC flows")
        return len(expired) + len(stale)


class DatabaseFlowStore(FlowStore):
    """Flow store backed by the ``oidc_flows`` table."""

    backend = "database"

    def __init__(
        self,
        ttl_seconds: int = 600,
        retention_seconds: int | None = None,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = db_session,
    ):
        super().__init__(ttl_seconds, retention_seconds)
        self._session_factory = session_factory

    async def _save(self, flow: FlowState) -> None:
        async with self._session_factory() as db:
            db.add(
                OIDCFlow(
                    flow_id=flow.flow_id,
                    code_verifier=flow.code_verifier,
                    expected_state=flow.expected_state,
                    expected_nonce=flow.expected_nonce,
                    redirect_uri=flow.redirect_uri,
                    created_at=flow.created_at,
                    expires_at=flow.expires_at,
                )
            )
            await db.commit()

    async def consume(self, flow_id: str | None) -> FlowState:
        if not flow_id:
            raise FlowNotFoundError("No flow id presented")

        now = datetime.now(UTC)
        async with self._session_factory() as db:
            # Conditional update claims the row; only one caller sees rowcount == 1
            result = await db.execute(
                update(OIDCFlow)
                .where(OIDCFlow.flow_id == flow_id, OIDCFlow.consumed_at.is_(None))
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1

            row = (
                await db.execute(select(OIDCFlow).where(OIDCFlow.flow_id == flow_id))
            ).scalar_one_or_none()

            if not claimed:
                await db.rollback()
                if row is None:
                    raise FlowNotFoundError(f"Unknown flow {flow_id[:8]}...")
                raise AlreadyConsumedError(f"Flow {flow_id[:8]}... already consumed")

            flow = FlowState(
                flow_id=row.flow_id,
                code_verifier=row.code_verifier,
                expected_state=row.expected_state,
                expected_nonce=row.expected_nonce,
                redirect_uri=row.redirect_uri,
                created_at=as_utc(row.created_at),
                expires_at=as_utc(row.expires_at),
            )

            expired = row.is_expired(now)
            if expired:
                await db.delete(row)
            else:
                # Keep a secret-free tombstone until it is purged
                row.code_verifier = None
                row.expected_state = None
                row.expected_nonce = None
            await db.commit()

        if expired:
            raise FlowExpiredError(f"Flow {flow_id[:8]}... expired")

        logger.debug("Consumed OIDC flow: %s...", flow_id[:8])
        return flow

    async def purge_expired(self) -> int:
        cutoff = self._purge_cutoff(datetime.now(UTC))
        async with self._session_factory() as db:
            result = await db.execute(delete(OIDCFlow).where(OIDCFlow.expires_at <= cutoff))
            await db.commit()

        deleted = result.rowcount or 0
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired OIDC flows")
        return deleted
