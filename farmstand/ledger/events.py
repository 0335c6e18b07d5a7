"""
Ledger — 台帳エントリ定義

台帳エントリは不変。あるエンティティの状態変化 1 回につき 1 件。
version はエンティティごとの連番で、リプレイ時の冪等性判定に使う。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: str
    entity_id: str
    version: int
    event_type: str
    previous_state: dict | None
    new_state: dict
    cause: str
    timestamp: datetime
    seq: int | None = None

    @classmethod
    def of(
        cls,
        entity_type: str,
        before: BaseModel | None,
        after: BaseModel,
        event_type: str,
        cause: str,
        timestamp: datetime,
    ) -> "LedgerEntry":
        """変更前後のモデルからエントリを作る。"""
        return cls(
            entity_type=entity_type,
            entity_id=after.id,
            version=after.version,
            event_type=event_type,
            previous_state=before.model_dump(mode="json") if before is not None else None,
            new_state=after.model_dump(mode="json"),
            cause=cause,
            timestamp=timestamp,
        )
