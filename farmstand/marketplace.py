"""
Marketplace — 構成ルート

設定からエンジン・台帳・各ストアを組み立てる。
起動時にスキーマを作り、期限切れの定期掃除を始める。
recover() は台帳を先頭からリプレイして、空のストアから状態を再構築する。
"""

from datetime import datetime
from typing import Callable

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import Settings
from .inventory.catalog import CatalogStore, ReservationBook
from .inventory.commands import ReservationEngine
from .ledger.event_store import Ledger
from .ledger.replay import replay
from .order.aggregate import OrderBook
from .order.commands import OrderStateMachine
from .order.expiry import ExpirySweeper
from .payment.gateway import PaymentProvider
from .payment.http_gateway import HttpPaymentProvider
from .payment.orchestrator import PaymentCoordinator
from .utils.clock import utcnow

logger = structlog.get_logger(__name__)


class Marketplace:
    def __init__(
        self,
        settings: Settings,
        db_engine: AsyncEngine,
        provider: PaymentProvider,
        *,
        redis: aioredis.Redis | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.db_engine = db_engine
        self.redis = redis
        self.provider = provider

        self.ledger = Ledger(db_engine, redis)
        self.catalog = CatalogStore()
        self.reservations = ReservationBook()
        self.orders = OrderBook()

        self.engine = ReservationEngine(
            self.catalog,
            self.reservations,
            self.ledger,
            reservation_ttl=settings.reservation_ttl,
            lock_timeout=settings.lock_timeout_seconds,
            clock=clock,
        )
        self.machine = OrderStateMachine(
            self.orders,
            self.engine,
            self.ledger,
            pending_order_ttl=settings.pending_order_ttl,
            clock=clock,
        )
        self.payments = PaymentCoordinator(
            self.machine,
            self.engine,
            provider,
            redis=redis,
            max_attempts=settings.payment_max_attempts,
            backoff_base=settings.payment_backoff_base_seconds,
            backoff_max=settings.payment_backoff_max_seconds,
            provider_timeout=settings.provider_timeout_seconds,
        )
        self.sweeper = ExpirySweeper(self.machine, interval=settings.sweep_interval_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, provider: PaymentProvider | None = None) -> "Marketplace":
        db_engine = create_async_engine(settings.database_url, echo=False)
        redis = aioredis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
        if provider is None:
            if not settings.payment_provider_url:
                raise ValueError("FARMSTAND_PAYMENT_PROVIDER_URL is required when no provider is given")
            provider = HttpPaymentProvider(settings.payment_provider_url, timeout=settings.provider_timeout_seconds)
        return cls(settings, db_engine, provider, redis=redis)

    def stores(self) -> dict:
        return {
            "Product": self.catalog,
            "Reservation": self.reservations,
            "Order": self.orders,
        }

    async def start(self, *, sweep: bool = True) -> None:
        await self.ledger.create_schema()
        await self.recover()
        if sweep:
            self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        if isinstance(self.provider, HttpPaymentProvider):
            await self.provider.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.db_engine.dispose()

    async def recover(self) -> int:
        """台帳を先頭からリプレイしてストアを再構築する。適用件数を返す。"""
        entries = await self.ledger.load_all_events()
        stores = self.stores()
        for store in stores.values():
            store.clear()
        applied = replay(entries, stores)
        logger.info(
            "marketplace_recovered",
            entries=len(entries),
            applied=applied,
            products=len(self.catalog),
            reservations=len(self.reservations),
            orders=len(self.orders),
        )
        return applied
