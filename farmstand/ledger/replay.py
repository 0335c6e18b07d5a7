"""
Ledger — リプレイ

台帳エントリを追記順に適用してストアを再構築する。
適用済みのエントリ (version が古い) はスキップするので、何度流しても結果は同じ。
"""

from typing import Iterable, Mapping

import structlog

from ..store import VersionedStore
from .events import LedgerEntry

logger = structlog.get_logger(__name__)


def replay(entries: Iterable[LedgerEntry], stores: Mapping[str, VersionedStore]) -> int:
    """エントリをストアへ適用し、実際に適用した件数を返す。"""
    applied = 0
    for entry in entries:
        store = stores.get(entry.entity_type)
        if store is None:
            logger.warning("replay_unknown_entity_type", entity_type=entry.entity_type, seq=entry.seq)
            continue
        if store.restore(entry.entity_id, entry.version, entry.new_state):
            applied += 1
    return applied
