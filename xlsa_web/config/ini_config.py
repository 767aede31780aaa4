########## ini_config.py

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from xlsa_web.domain.models import BALANCED, QUALITY, SPEED, TierProfile

INI_DEFAULT_NAME = "xlsa_web.ini"

TIER_IDS = (SPEED, BALANCED, QUALITY)


def _frozen(d: dict) -> Mapping:
    return MappingProxyType(dict(d))


DEFAULT_TIER_PROFILES = (
    TierProfile(SPEED, "google/gemini-flash-1.5", 0.075, frozenset({"text_analysis", "chat"})),
    TierProfile(BALANCED, "anthropic/claude-3-haiku", 0.25, frozenset({"text_analysis", "chat", "image_analysis"})),
    TierProfile(QUALITY, "openai/gpt-4-turbo", 10.0, frozenset({"text_analysis", "chat", "image_analysis", "conversation"})),
)


@dataclass(frozen=True)
class CostTable:
    base_cost: Mapping[str, int] = field(default_factory=lambda: _frozen({SPEED: 30, BALANCED: 50, QUALITY: 100}))
    ceiling: Mapping[str, int] = field(default_factory=lambda: _frozen({SPEED: 100, BALANCED: 200, QUALITY: 300}))
    credits_per_mb: int = 10
    long_request_chars: int = 200
    long_request_surcharge: int = 20
    per_unit_surcharge: int = 5


@dataclass(frozen=True)
class TierPolicy:
    subscription_required: bool = True
    balanced_min_balance: int = 50
    quality_min_balance: int = 100
    quality_plans: frozenset = frozenset({"pro", "enterprise"})

    # recommendation thresholds
    small_file_mb: float = 1.0
    large_file_mb: float = 5.0
    speed_below_balance: int = 100
    quality_recommend_balance: int = 150


@dataclass(frozen=True)
class GenerationThresholds:
    small: float = 1.0          # thousands of rows
    medium: float = 10.0
    stream_chunk_rows: int = 1000


@dataclass(frozen=True)
class AiSettings:
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    timeout_seconds: int = 60
    app_url: str = "http://localhost:5000"
    app_title: str = "xlsa-web"


@dataclass(frozen=True)
class SqlServerSettings:
    driver: str
    server: str
    database: str
    username: str
    password: str
    trust_cert: bool


@dataclass(frozen=True)
class AppSettings:
    storage_dir: Path

    flask_host: str = "127.0.0.1"
    flask_port: int = 5000
    flask_debug: bool = False

    ai: AiSettings = AiSettings()
    tiers: tuple = DEFAULT_TIER_PROFILES
    costs: CostTable = CostTable()
    tier_policy: TierPolicy = TierPolicy()
    generation: GenerationThresholds = GenerationThresholds()
    complexity_threshold: int = 80

    max_workers: int = 4
    mailbox_size: int = 100
    task_retention_seconds: float = 3600.0

    sqlserver: Optional[SqlServerSettings] = None


class IniConfig:
    """
    Adapter around ConfigParser and filesystem resolution.
    Keeps INI handling out of the service code.
    """

    def __init__(self, ini_path: Path):
        self._ini_path = ini_path
        self._cfg = ConfigParser()
        read_ok = self._cfg.read(str(ini_path), encoding="utf-8-sig")
        if not read_ok:
            raise FileNotFoundError(f"INI file not found or unreadable: {ini_path}")

    @property
    def ini_path(self) -> Path:
        return self._ini_path

    @staticmethod
    def from_env_or_default() -> "IniConfig":
        ini_raw = (os.getenv("APP_INI") or "").strip()
        # If APP_INI is not set, default to repo-root-relative ini location
        ini_path = Path(ini_raw) if ini_raw else (Path(__file__).resolve().parents[2] / INI_DEFAULT_NAME)
        return IniConfig(ini_path)

    def _str(self, section: str, key: str, default: str) -> str:
        return (self._cfg.get(section, key, fallback=default) or "").strip() or default

    def _cfg_path(self, section: str, key: str, default: str) -> Path:
        """
        Reads a filesystem path from INI and resolves it.
        Relative paths are taken relative to the INI file.
        """
        raw = self._str(section, key, default)
        raw = os.path.expandvars(os.path.expanduser(raw))
        p = Path(raw)
        if not p.is_absolute():
            p = self._ini_path.resolve().parent / p
        return p.resolve()

    def _tier_profiles(self) -> tuple:
        profiles = []
        for default in DEFAULT_TIER_PROFILES:
            sec = f"tier.{default.tier_id}"
            caps_raw = self._cfg.get(sec, "capabilities", fallback="") or ""
            caps = frozenset(c.strip() for c in caps_raw.split(",") if c.strip()) or default.capabilities
            profiles.append(
                TierProfile(
                    tier_id=default.tier_id,
                    model_id=self._str(sec, "model_id", default.model_id),
                    price_per_million_tokens=self._cfg.getfloat(
                        sec, "price_per_million_tokens", fallback=default.price_per_million_tokens
                    ),
                    capabilities=caps,
                )
            )
        return tuple(profiles)

    def _cost_table(self) -> CostTable:
        d = CostTable()
        base = {t: self._cfg.getint("costs", f"base_{t}", fallback=d.base_cost[t]) for t in TIER_IDS}
        ceiling = {t: self._cfg.getint("costs", f"ceiling_{t}", fallback=d.ceiling[t]) for t in TIER_IDS}
        return CostTable(
            base_cost=_frozen(base),
            ceiling=_frozen(ceiling),
            credits_per_mb=self._cfg.getint("costs", "credits_per_mb", fallback=d.credits_per_mb),
            long_request_chars=self._cfg.getint("costs", "long_request_chars", fallback=d.long_request_chars),
            long_request_surcharge=self._cfg.getint("costs", "long_request_surcharge", fallback=d.long_request_surcharge),
            per_unit_surcharge=self._cfg.getint("costs", "per_unit_surcharge", fallback=d.per_unit_surcharge),
        )

    def _sqlserver(self) -> Optional[SqlServerSettings]:
        if not self._cfg.has_section("sqlserver"):
            return None

        s = self._cfg["sqlserver"]
        database = (s.get("database", "") or "").strip()
        if not database:
            raise ValueError("sqlserver.database is empty in INI")

        trust_raw = (s.get("trust_cert", "yes") or "").strip().lower()
        return SqlServerSettings(
            driver=(s.get("driver", "ODBC Driver 17 for SQL Server") or "").strip(),
            server=(s.get("server", "localhost") or "").strip(),
            database=database,
            username=(s.get("username", "") or "").strip(),
            password=(s.get("password", "") or "").strip(),
            trust_cert=trust_raw in ("yes", "true", "1"),
        )

    def load_settings(self) -> AppSettings:
        # Storage
        storage_dir = self._cfg_path("paths", "storage_dir", "storage")

        # AI backend (env var wins for the key so it never has to live in the INI)
        ai = AiSettings(
            base_url=self._str("ai", "base_url", AiSettings.base_url).rstrip("/"),
            api_key=(os.getenv("OPENROUTER_API_KEY") or self._cfg.get("ai", "api_key", fallback="") or "").strip(),
            timeout_seconds=self._cfg.getint("ai", "timeout_seconds", fallback=AiSettings.timeout_seconds),
            app_url=self._str("ai", "app_url", AiSettings.app_url),
            app_title=self._str("ai", "app_title", AiSettings.app_title),
        )

        p = TierPolicy()
        tier_policy = TierPolicy(
            subscription_required=self._cfg.getboolean("billing", "subscription_required", fallback=p.subscription_required),
            balanced_min_balance=self._cfg.getint("billing", "balanced_min_balance", fallback=p.balanced_min_balance),
            quality_min_balance=self._cfg.getint("billing", "quality_min_balance", fallback=p.quality_min_balance),
        )

        g = GenerationThresholds()
        generation = GenerationThresholds(
            small=self._cfg.getfloat("generation", "small_threshold", fallback=g.small),
            medium=self._cfg.getfloat("generation", "medium_threshold", fallback=g.medium),
            stream_chunk_rows=self._cfg.getint("generation", "stream_chunk_rows", fallback=g.stream_chunk_rows),
        )
        if generation.small > generation.medium:
            raise ValueError("generation.small_threshold must not exceed generation.medium_threshold")

        # Flask
        flask_host = self._str("flask", "host", "127.0.0.1")
        flask_port = self._cfg.getint("flask", "port", fallback=5000)
        flask_debug = self._cfg.getboolean("flask", "debug", fallback=False)

        storage_dir.mkdir(parents=True, exist_ok=True)

        return AppSettings(
            storage_dir=storage_dir,
            flask_host=flask_host,
            flask_port=flask_port,
            flask_debug=flask_debug,
            ai=ai,
            tiers=self._tier_profiles(),
            costs=self._cost_table(),
            tier_policy=tier_policy,
            generation=generation,
            complexity_threshold=self._cfg.getint("analysis", "complexity_threshold", fallback=80),
            max_workers=self._cfg.getint("workers", "max_workers", fallback=4),
            mailbox_size=self._cfg.getint("workers", "mailbox_size", fallback=100),
            task_retention_seconds=self._cfg.getfloat("workers", "task_retention_seconds", fallback=3600.0),
            sqlserver=self._sqlserver(),
        )
