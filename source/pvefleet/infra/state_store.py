from __future__ import annotations

import time
from pathlib import Path

from sqlalchemy import Integer, String, Text, delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pvefleet.core.models import NodeStateRecord


class Base(DeclarativeBase):
    pass


class NodeStateRow(Base):
    __tablename__ = "node_states"

    vmid: Mapped[int] = mapped_column(Integer, primary_key=True)
    fleet_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    state: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    failed_operation: Mapped[str | None] = mapped_column(String(16), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


class LockRow(Base):
    __tablename__ = "locks"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[int] = mapped_column(Integer, nullable=False)
    refreshed_at: Mapped[int] = mapped_column(Integer, nullable=False)


class StateStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_async_engine(f"sqlite+aiosqlite:///{self.db_path}", future=True)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)
        self._initialized = False

    async def close(self) -> None:
        await self._engine.dispose()

    def _to_record(self, row: NodeStateRow) -> NodeStateRecord:
        return NodeStateRecord(
            vmid=int(row.vmid),
            fleet_id=str(row.fleet_id),
            name=str(row.name),
            state=str(row.state),
            failed_operation=(str(row.failed_operation) if row.failed_operation is not None else None),
            ip_address=(str(row.ip_address) if row.ip_address is not None else None),
            last_error=(str(row.last_error) if row.last_error is not None else None),
            updated_at=int(row.updated_at),
        )

    async def init(self) -> None:
        if self._initialized:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def upsert_node_state(
        self,
        *,
        vmid: int,
        fleet_id: str,
        name: str,
        state: str,
        failed_operation: str | None = None,
        ip_address: str | None = None,
        last_error: str | None = None,
    ) -> None:
        now = int(time.time())
        values = {
            "fleet_id": str(fleet_id),
            "name": str(name),
            "state": str(state),
            "failed_operation": failed_operation,
            "ip_address": ip_address,
            "last_error": last_error,
            "updated_at": now,
        }
        async with self._sessions() as session, session.begin():
            stmt = sqlite_insert(NodeStateRow).values(vmid=int(vmid), **values)
            stmt = stmt.on_conflict_do_update(index_elements=[NodeStateRow.vmid], set_=values)
            await session.execute(stmt)

    async def get_node_state(self, vmid: int) -> NodeStateRecord | None:
        async with self._sessions() as session:
            row = await session.get(NodeStateRow, int(vmid))
            if row is None:
                return None
            return self._to_record(row)

    async def list_node_states(self) -> list[NodeStateRecord]:
        async with self._sessions() as session:
            rows = (await session.execute(select(NodeStateRow).order_by(NodeStateRow.vmid))).scalars()
            return [self._to_record(row) for row in rows]

    async def delete_node_state(self, vmid: int) -> None:
        async with self._sessions() as session, session.begin():
            row = await session.get(NodeStateRow, int(vmid))
            if row is not None:
                await session.delete(row)

    async def try_acquire_lock(self, name: str, holder: str, ttl_seconds: int) -> bool:
        now = int(time.time())
        async with self._sessions() as session, session.begin():
            if ttl_seconds > 0:
                await session.execute(
                    delete(LockRow).where(LockRow.name == str(name), LockRow.refreshed_at < now - int(ttl_seconds))
                )
            stmt = sqlite_insert(LockRow).values(
                name=str(name), holder=str(holder), acquired_at=now, refreshed_at=now
            )
            stmt = stmt.on_conflict_do_nothing(index_elements=[LockRow.name])
            await session.execute(stmt)
            row = await session.get(LockRow, str(name))
            return row is not None and row.holder == str(holder)

    async def refresh_lock(self, name: str, holder: str) -> bool:
        """Bump the heartbeat of a lock still owned by ``holder``."""
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(LockRow)
                .where(LockRow.name == str(name), LockRow.holder == str(holder))
                .values(refreshed_at=int(time.time()))
            )
            return bool(result.rowcount)

    async def lock_holder(self, name: str) -> tuple[str, int] | None:
        async with self._sessions() as session:
            row = await session.get(LockRow, str(name))
            if row is None:
                return None
            return str(row.holder), int(row.acquired_at)

    async def release_lock(self, name: str, holder: str) -> None:
        async with self._sessions() as session, session.begin():
            await session.execute(delete(LockRow).where(LockRow.name == str(name), LockRow.holder == str(holder)))

    async def force_release_lock(self, name: str) -> bool:
        async with self._sessions() as session, session.begin():
            result = await session.execute(delete(LockRow).where(LockRow.name == str(name)))
            return bool(result.rowcount)
