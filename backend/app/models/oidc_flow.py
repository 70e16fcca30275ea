"""OIDC flow model for pending Authorization Code + PKCE logins."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.identity import as_utc


class OIDCFlow(Base):
    """Pending OIDC login flow.

    Holds the PKCE verifier, expected state and expected nonce for one login
    attempt. Rows are single use: consuming a flow stamps ``consumed_at`` and
    scrubs the secrets, leaving a tombstone until ``expires_at`` so replays
    can be told apart from unknown flow ids.
    """

    __tablename__ = "oidc_flows"

    flow_id: Mapped[str] = mapped_column(String(64), primary_key=True, nullable=False)
    code_verifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expected_state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expected_nonce: Mapped[str | None] = mapped_column(String(128), nullable=True)
    redirect_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_oidc_flows_expires_at", "expires_at"),)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the flow has passed its TTL."""
        now = now or datetime.now(UTC)
        return now >= as_utc(self.expires_at)

