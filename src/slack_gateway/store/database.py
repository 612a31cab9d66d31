"""Relational tenant store: the durable tier for multi-replica deployments.

Uses SQLAlchemy's async ORM. Production runs against Postgres via
asyncpg (``postgresql+asyncpg://...``); tests use ``sqlite+aiosqlite``.
The response-behavior flags are stored as one JSON column (JSONB on
Postgres).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, Text, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from slack_gateway.models import ResponseBehavior, TenantConfig

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
        datetime: DateTime(timezone=True),
    }


class SlackConnection(Base):
    """One row per tenant connection."""

    __tablename__ = "slack_connections"

    connection_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(255), default="")
    api_base_url: Mapped[str] = mapped_column(Text, default="")
    bootstrap_token: Mapped[str] = mapped_column(Text, default="")
    api_token: Mapped[str] = mapped_column(Text, default="")
    model_provider_id: Mapped[str | None] = mapped_column(String(255))
    model_id: Mapped[str | None] = mapped_column(String(255))
    agent_id: Mapped[str | None] = mapped_column(String(255))
    system_prompt: Mapped[str | None] = mapped_column(Text)
    bot_token: Mapped[str] = mapped_column(Text)
    signing_secret: Mapped[str] = mapped_column(Text)
    team_id: Mapped[str | None] = mapped_column(String(64), index=True)
    bot_user_id: Mapped[str | None] = mapped_column(String(64))
    response_config: Mapped[dict[str, Any]] = mapped_column(default=dict)
    configured_at: Mapped[datetime | None]
    updated_at: Mapped[datetime | None]

    def apply(self, config: TenantConfig) -> None:
        self.organization_id = config.organization_id
        self.api_base_url = config.api_base_url
        self.bootstrap_token = config.bootstrap_token
        self.api_token = config.api_token
        self.model_provider_id = config.model_provider_id
        self.model_id = config.model_id
        self.agent_id = config.agent_id
        self.system_prompt = config.system_prompt
        self.bot_token = config.bot_token
        self.signing_secret = config.signing_secret
        self.team_id = config.workspace_id
        self.bot_user_id = config.bot_user_id
        self.response_config = {
            "streaming": config.behavior.streaming,
            "show_status": config.behavior.show_status,
        }
        self.configured_at = _parse_time(config.configured_at)
        self.updated_at = _parse_time(config.updated_at)

    def to_config(self) -> TenantConfig:
        return TenantConfig(
            tenant_id=self.connection_id,
            organization_id=self.organization_id or "",
            api_base_url=self.api_base_url or "",
            bootstrap_token=self.bootstrap_token or "",
            api_token=self.api_token or "",
            model_provider_id=self.model_provider_id,
            model_id=self.model_id,
            agent_id=self.agent_id,
            system_prompt=self.system_prompt,
            bot_token=self.bot_token,
            signing_secret=self.signing_secret,
            workspace_id=self.team_id,
            bot_user_id=self.bot_user_id,
            behavior=ResponseBehavior.from_dict(self.response_config),
            configured_at=_format_time(self.configured_at),
            updated_at=_format_time(self.updated_at),
        )


def _parse_time(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _format_time(value: datetime | None) -> str:
    if value is None:
        return ""
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


class DatabaseTenantStore:
    """``TenantStore`` backed by the ``slack_connections`` table.

    Driver and connection errors (``sqlalchemy.exc.SQLAlchemyError``,
    ``OSError``) propagate to the caller.
    """

    name = "database"

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, url: str) -> DatabaseTenantStore:
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=5, pool_recycle=3600)
        return cls(create_async_engine(url, **kwargs))

    async def create_schema(self) -> None:
        """Create the table if missing. Production deployments use migrations."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def save(self, config: TenantConfig) -> None:
        async with self._sessions() as session, session.begin():
            row = await session.get(SlackConnection, config.tenant_id)
            if row is None:
                row = SlackConnection(connection_id=config.tenant_id)
                session.add(row)
            row.apply(config)

    async def load(self, tenant_id: str) -> TenantConfig | None:
        async with self._sessions() as session:
            row = await session.get(SlackConnection, tenant_id)
            return row.to_config() if row is not None else None

    async def load_by_key(self, team_id: str) -> TenantConfig | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(SlackConnection)
                .where(SlackConnection.team_id == team_id)
                .order_by(SlackConnection.updated_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return row.to_config() if row is not None else None

    async def delete(self, tenant_id: str) -> None:
        async with self._sessions() as session, session.begin():
            row = await session.get(SlackConnection, tenant_id)
            if row is not None:
                await session.delete(row)

    async def count(self) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count()).select_from(SlackConnection)
            )
            return int(result.scalar_one())

    async def close(self) -> None:
        await self._engine.dispose()
