"""
バージョン付きキーバリューストア

カタログ・予約・注文の各ストアの共通部分。
書き込みは必ず version を 1 つ進める (比較交換)。
リプレイ時は restore() で台帳の new_state をそのまま戻す。
"""

from typing import Generic, Iterator, TypeVar

from pydantic import BaseModel

from .errors import ReservationConflict

M = TypeVar("M", bound=BaseModel)


class VersionedStore(Generic[M]):
    model: type[M]

    def __init__(self) -> None:
        self._items: dict[str, M] = {}

    def get(self, item_id: str) -> M | None:
        return self._items.get(item_id)

    def values(self) -> Iterator[M]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def put(self, item: M) -> None:
        current = self._items.get(item.id)
        expected = current.version + 1 if current else 1
        if item.version != expected:
            raise ReservationConflict(
                f"{type(item).__name__} {item.id}: version {item.version}, expected {expected}"
            )
        self._items[item.id] = item

    def restore(self, item_id: str, version: int, state: dict) -> bool:
        """台帳エントリを適用する。適用済み (version が古い) なら何もしない。"""
        current = self._items.get(item_id)
        if current is not None and current.version >= version:
            return False
        self._items[item_id] = self.model.model_validate(state)
        return True

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> dict[str, dict]:
        return {
            item_id: item.model_dump(mode="json")
            for item_id, item in sorted(self._items.items())
        }
