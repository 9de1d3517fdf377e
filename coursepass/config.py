"""引擎設定模組。"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


NEVER_ACTIVATED_POLICIES = {"expired", "cancelled"}
STORAGE_CHOICES = {"memory", "file", "sql"}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "STORAGE": "file",
    "LOG_LEVEL": "INFO",
    "ORDER_TTL_MINUTES": 15,
    "PAYMENT_SUCCESS_RATE": 0.8,
    "PAYMENT_OUTAGE_RATE": 0.0,
    "PAYMENT_MIN_LATENCY_SECONDS": 1.0,
    "PAYMENT_MAX_LATENCY_SECONDS": 3.0,
    "PAYMENT_TIMEOUT_SECONDS": 10.0,
    "SWEEPER_ENABLED": True,
    "SWEEP_INTERVAL_SECONDS": 60,
    "NEVER_ACTIVATED_POLICY": "expired",
    "AUTO_EXPIRE_INACTIVE_MEMBERS": True,
    "MEMBER_ACTIVATION_DEADLINE_DAYS": 30,
    "SINGLE_ACTIVE_MEMBERSHIP": True,
    "PERSISTENCE_RETRY_DELAYS": [0.1, 0.5, 1.0],
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_delays(value: Any) -> Tuple[float, ...]:
    if isinstance(value, str):
        parts = [p for p in value.split(",") if p.strip()]
    else:
        parts = list(value or [])
    return tuple(float(p) for p in parts)


@dataclass
class EngineConfig:
    """封裝生命週期引擎與 HTTP 介面的設定值。"""

    secret_key: str = "coursepass-dev"
    data_dir: Path = field(default_factory=lambda: Path.cwd() / "data")
    storage: str = "file"
    database_url: str = ""
    log_level: str = "INFO"
    order_ttl_minutes: int = 15
    payment_success_rate: float = 0.8
    payment_outage_rate: float = 0.0
    payment_min_latency_seconds: float = 1.0
    payment_max_latency_seconds: float = 3.0
    payment_timeout_seconds: float = 10.0
    sweeper_enabled: bool = True
    sweep_interval_seconds: float = 60.0
    never_activated_policy: str = "expired"
    auto_expire_inactive_members: bool = True
    member_activation_deadline_days: int = 30
    single_active_membership: bool = True
    persistence_retry_delays: Tuple[float, ...] = (0.1, 0.5, 1.0)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir / 'coursepass.db'}"
        self.validate()

    @property
    def settings_file(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def plans_file(self) -> Path:
        return self.data_dir / "plans.json"

    @property
    def companies_file(self) -> Path:
        return self.data_dir / "companies.json"

    def validate(self) -> None:
        if self.storage not in STORAGE_CHOICES:
            raise ValueError(f"STORAGE must be one of {sorted(STORAGE_CHOICES)}")
        if self.never_activated_policy not in NEVER_ACTIVATED_POLICIES:
            raise ValueError(f"NEVER_ACTIVATED_POLICY must be one of {sorted(NEVER_ACTIVATED_POLICIES)}")
        if not 0.0 <= self.payment_success_rate <= 1.0:
            raise ValueError("PAYMENT_SUCCESS_RATE must be within [0, 1]")
        if not 0.0 <= self.payment_outage_rate <= 1.0:
            raise ValueError("PAYMENT_OUTAGE_RATE must be within [0, 1]")
        if self.payment_min_latency_seconds > self.payment_max_latency_seconds:
            raise ValueError("PAYMENT_MIN_LATENCY_SECONDS must not exceed PAYMENT_MAX_LATENCY_SECONDS")
        if self.order_ttl_minutes <= 0:
            raise ValueError("ORDER_TTL_MINUTES must be > 0")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "EngineConfig":
        """從 data/settings.json 載入設定，並以環境變數覆寫。"""

        root = Path(data_dir or os.environ.get("COURSEPASS_DATA_DIR") or Path.cwd() / "data")
        root.mkdir(parents=True, exist_ok=True)
        settings_file = root / "settings.json"

        # 首次啟動時以預設值建立 settings.json
        if not settings_file.exists():
            settings_file.write_text(
                json.dumps(DEFAULT_SETTINGS, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            print(f"[EngineConfig] created default settings file: {settings_file}")

        try:
            settings = json.loads(settings_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"settings file is not valid JSON: {settings_file}") from exc
        if not isinstance(settings, dict):
            raise ValueError(f"settings file must hold a JSON object: {settings_file}")

        def pick(key: str) -> Any:
            env_value = os.environ.get(f"COURSEPASS_{key}")
            if env_value is not None:
                return env_value
            return settings.get(key, DEFAULT_SETTINGS.get(key))

        return cls(
            secret_key=os.environ.get("COURSEPASS_SECRET_KEY", "coursepass-dev"),
            data_dir=root,
            storage=str(pick("STORAGE")).lower(),
            database_url=os.environ.get("COURSEPASS_DATABASE_URL") or settings.get("DATABASE_URL", ""),
            log_level=str(pick("LOG_LEVEL")),
            order_ttl_minutes=int(pick("ORDER_TTL_MINUTES")),
            payment_success_rate=float(pick("PAYMENT_SUCCESS_RATE")),
            payment_outage_rate=float(pick("PAYMENT_OUTAGE_RATE")),
            payment_min_latency_seconds=float(pick("PAYMENT_MIN_LATENCY_SECONDS")),
            payment_max_latency_seconds=float(pick("PAYMENT_MAX_LATENCY_SECONDS")),
            payment_timeout_seconds=float(pick("PAYMENT_TIMEOUT_SECONDS")),
            sweeper_enabled=_as_bool(pick("SWEEPER_ENABLED")),
            sweep_interval_seconds=float(pick("SWEEP_INTERVAL_SECONDS")),
            never_activated_policy=str(pick("NEVER_ACTIVATED_POLICY")).lower(),
            auto_expire_inactive_members=_as_bool(pick("AUTO_EXPIRE_INACTIVE_MEMBERS")),
            member_activation_deadline_days=int(pick("MEMBER_ACTIVATION_DEADLINE_DAYS")),
            single_active_membership=_as_bool(pick("SINGLE_ACTIVE_MEMBERSHIP")),
            persistence_retry_delays=_as_delays(pick("PERSISTENCE_RETRY_DELAYS")),
        )
