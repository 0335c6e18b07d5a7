"""
Ledger — イベントストア

追記専用の台帳。状態変更はまずここに書き、成功してから
メモリ上のストアへ反映する (Write-Ahead)。
書き込みに失敗したら LedgerWriteFailed を送出し、呼び出し側の処理を中断させる。

(entity_type, entity_id, version) の UNIQUE 制約で、
同じバージョンの二重書き込みを検知する。
"""

import asyncio
import json
from datetime import datetime
from typing import Sequence

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ..errors import LedgerWriteFailed
from .events import LedgerEntry

logger = structlog.get_logger(__name__)

metadata = MetaData()

ledger_table = Table(
    "ledger",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("entity_type", String(32), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("version", Integer, nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("cause", Text, nullable=False),
    Column("previous_state", Text),
    Column("new_state", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("entity_type", "entity_id", "version", name="uq_ledger_entity_version"),
)

# エンティティ種別ごとの Pub/Sub チャンネル
CHANNELS = {
    "Product": "inventory_events",
    "Reservation": "inventory_events",
    "Order": "order_events",
}


class Ledger:
    def __init__(self, engine: AsyncEngine, redis: aioredis.Redis | None = None) -> None:
        self.engine = engine
        self.redis = redis
        self._session = async_sessionmaker(engine, expire_on_commit=False)
        # 追記を直列化して、エンティティごとの追記順 = 遷移順を保証する
        self._lock = asyncio.Lock()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def record(self, entry: LedgerEntry) -> LedgerEntry:
        recorded = await self.record_many([entry])
        return recorded[0]

    async def record_many(self, entries: Sequence[LedgerEntry]) -> list[LedgerEntry]:
        """
        複数エントリを 1 トランザクションで追記する。

        全件成功か全件失敗のどちらか。失敗時は LedgerWriteFailed。
        """
        if not entries:
            return []

        recorded: list[LedgerEntry] = []
        async with self._lock:
            try:
                async with self._session() as session:
                    async with session.begin():
                        for entry in entries:
                            result = await session.execute(
                                text("""
                                    INSERT INTO ledger
                                        (entity_type, entity_id, version, event_type, cause,
                                         previous_state, new_state, created_at)
                                    VALUES
                                        (:entity_type, :entity_id, :version, :event_type, :cause,
                                         :previous_state, :new_state, :created_at)
                                    RETURNING seq
                                """),
                                {
                                    "entity_type": entry.entity_type,
                                    "entity_id": entry.entity_id,
                                    "version": entry.version,
                                    "event_type": entry.event_type,
                                    "cause": entry.cause,
                                    "previous_state": json.dumps(entry.previous_state, default=str)
                                    if entry.previous_state is not None
                                    else None,
                                    "new_state": json.dumps(entry.new_state, default=str),
                                    "created_at": entry.timestamp.isoformat(),
                                },
                            )
                            recorded.append(entry.model_copy(update={"seq": result.scalar_one()}))
            except SQLAlchemyError as exc:
                logger.error(
                    "ledger_write_failed",
                    entity_ids=[e.entity_id for e in entries],
                    error=str(exc),
                )
                raise LedgerWriteFailed(f"Could not append {len(entries)} ledger entries: {exc}") from exc

        await self._publish(recorded)
        return recorded

    async def _publish(self, entries: list[LedgerEntry]) -> None:
        """コミット済みのエントリを Redis Pub/Sub で通知する。"""
        if self.redis is None:
            return
        for entry in entries:
            try:
                await self.redis.publish(
                    CHANNELS.get(entry.entity_type, "ledger_events"),
                    json.dumps(
                        {
                            "event_type": entry.event_type,
                            "data": entry.model_dump(mode="json"),
                        },
                        default=str,
                    ),
                )
            except RedisError as exc:
                # 台帳には記録済み。通知の失敗で状態は巻き戻さない
                logger.warning("ledger_publish_failed", seq=entry.seq, error=str(exc))

    async def load_events(self, entity_id: str, entity_type: str | None = None) -> list[LedgerEntry]:
        """指定エンティティのエントリをバージョン順に返す。"""
        query = """
            SELECT seq, entity_type, entity_id, version, event_type, cause,
                   previous_state, new_state, created_at
            FROM ledger
            WHERE entity_id = :entity_id
        """
        params = {"entity_id": entity_id}
        if entity_type is not None:
            query += " AND entity_type = :entity_type"
            params["entity_type"] = entity_type
        query += " ORDER BY version ASC, seq ASC"

        async with self._session() as session:
            result = await session.execute(text(query), params)
            return [_to_entry(row) for row in result.fetchall()]

    async def load_all_events(self) -> list[LedgerEntry]:
        """全エントリを追記順に返す (リカバリ用)。"""
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT seq, entity_type, entity_id, version, event_type, cause,
                           previous_state, new_state, created_at
                    FROM ledger
                    ORDER BY seq ASC
                """),
            )
            return [_to_entry(row) for row in result.fetchall()]


def _to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        seq=row.seq,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        version=row.version,
        event_type=row.event_type,
        cause=row.cause,
        previous_state=json.loads(row.previous_state) if row.previous_state else None,
        new_state=json.loads(row.new_state),
        timestamp=datetime.fromisoformat(row.created_at),
    )
