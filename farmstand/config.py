"""
設定 (Configuration)

環境変数から読み込む。DATABASE_URL / REDIS_URL はサービスと同じ名前を使い、
エンジン固有の値には FARMSTAND_ 接頭辞を付ける。
"""

import os
from datetime import timedelta

from pydantic import BaseModel, Field

ENV_PREFIX = "FARMSTAND_"


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///farmstand.db"
    redis_url: str | None = None

    # 予約の有効期限 (デフォルト 15 分)
    reservation_ttl_seconds: float = Field(default=15 * 60, gt=0)
    # 予約が一度も試みられなかった pending 注文を破棄するまでの時間
    pending_order_ttl_seconds: float = Field(default=60 * 60, gt=0)
    sweep_interval_seconds: float = Field(default=30, gt=0)
    lock_timeout_seconds: float = Field(default=5, gt=0)

    payment_provider_url: str | None = None
    provider_timeout_seconds: float = Field(default=10, gt=0)
    payment_max_attempts: int = Field(default=4, ge=1)
    payment_backoff_base_seconds: float = Field(default=0.5, ge=0)
    payment_backoff_max_seconds: float = Field(default=8, ge=0)

    log_level: str = "INFO"

    @property
    def reservation_ttl(self) -> timedelta:
        return timedelta(seconds=self.reservation_ttl_seconds)

    @property
    def pending_order_ttl(self) -> timedelta:
        return timedelta(seconds=self.pending_order_ttl_seconds)

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        """環境変数から設定を組み立てる。未設定の項目はデフォルト値。"""
        env = os.environ if environ is None else environ
        values: dict = {}
        if "DATABASE_URL" in env:
            values["database_url"] = env["DATABASE_URL"]
        if "REDIS_URL" in env:
            values["redis_url"] = env["REDIS_URL"]
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in env:
                values[name] = env[key]
        return cls.model_validate(values)
