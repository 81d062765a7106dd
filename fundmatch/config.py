from __future__ import annotations
import math
import os
from dataclasses import dataclass, field, fields
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from fundmatch.errors import ConfigurationError

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "configs", "matching.yml")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_str(name: str) -> Optional[str]:
    val = os.getenv(name, "").strip()
    return val or None


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    redis_url: str = "redis://redis:6379/0"
    rq_queue: str = "default"
    rq_default_timeout: int = 72000

    cron_secret: Optional[str] = None
    webhook_signing_key: Optional[str] = None
    webhook_next_signing_key: Optional[str] = None
    admin_api_key: Optional[str] = None
    worker_api_key: Optional[str] = None
    worker_url: Optional[str] = None

    frontend_origin: Optional[str] = None
    app_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    vector_store_dir: Path = Path("vector_store")
    embed_model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"

    ses_from_email: Optional[str] = None
    aws_region: str = "ap-northeast-2"

    worker_memory_warning_mb: int = 400
    worker_memory_critical_mb: int = 480

    @classmethod
    def from_env(cls) -> "Settings":
        worker_url = _env_str("WORKER_URL")
        if worker_url and not worker_url.startswith(("http://", "https://")):
            worker_url = f"https://{worker_url}"
        return cls(
            database_url=_env_str("DATABASE_URL"),
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            rq_queue=os.getenv("RQ_QUEUE", "default"),
            rq_default_timeout=_env_int("RQ_DEFAULT_TIMEOUT", 72000),
            cron_secret=_env_str("CRON_SECRET"),
            webhook_signing_key=_env_str("WEBHOOK_SIGNING_KEY"),
            webhook_next_signing_key=_env_str("WEBHOOK_NEXT_SIGNING_KEY"),
            admin_api_key=_env_str("ADMIN_API_KEY"),
            worker_api_key=_env_str("WORKER_API_KEY"),
            worker_url=worker_url.rstrip("/") if worker_url else None,
            frontend_origin=_env_str("FRONTEND_ORIGIN"),
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=Path(os.getenv("LOG_DIR", "logs")),
            vector_store_dir=Path(os.getenv("VECTOR_STORE_DIR", "vector_store")),
            embed_model=os.getenv("EMBED_MODEL", cls.embed_model),
            ses_from_email=_env_str("SES_FROM_EMAIL"),
            aws_region=os.getenv("AWS_REGION", "ap-northeast-2"),
            worker_memory_warning_mb=_env_int("WORKER_MEMORY_WARNING_MB", 400),
            worker_memory_critical_mb=_env_int("WORKER_MEMORY_CRITICAL_MB", 480),
        )

    @property
    def worker_available(self) -> bool:
        return bool(self.worker_url and self.worker_api_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


# ---------- Scoring / pipeline knobs ----------

@dataclass(frozen=True)
class Weights:
    similarity: float = 0.40
    category: float = 0.20
    eligibility: float = 0.20
    timeliness: float = 0.12
    amount: float = 0.08

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))


@dataclass(frozen=True)
class SimilarityBand:
    input_min: float = 20
    input_max: float = 50
    output_min: float = 50
    output_max: float = 100


@dataclass(frozen=True)
class TimelinessKnobs:
    permanent: int = 90
    no_deadline: int = 50
    risky_days: int = 3
    risky_score: int = 40
    sweet_spot_days: int = 30
    decay_until_days: int = 120
    floor: int = 40
    near_deadline_days: int = 14


@dataclass(frozen=True)
class AmountKnobs:
    band_factor: float = 10
    unknown: int = 50
    outside_preference: int = 20
    near_band: int = 60
    far: int = 30


@dataclass(frozen=True)
class DegradedKnobs:
    base: int = 40
    keyword_bonus: int = 5
    keyword_bonus_cap: int = 20
    recency_bonus: int = 10
    score_ceiling: int = 84


@dataclass(frozen=True)
class ScoringConfig:
    weights: Weights = field(default_factory=Weights)
    high_threshold: int = 85
    medium_threshold: int = 70
    similarity_band: SimilarityBand = field(default_factory=SimilarityBand)
    category_default: int = 50
    eligibility_partial_floor: int = 40
    timeliness: TimelinessKnobs = field(default_factory=TimelinessKnobs)
    amount: AmountKnobs = field(default_factory=AmountKnobs)
    degraded: DegradedKnobs = field(default_factory=DegradedKnobs)
    nationwide_region: str = "전국"

    def __post_init__(self):
        if not math.isclose(self.weights.total(), 1.0, abs_tol=1e-9):
            raise ConfigurationError(f"Scoring weights must sum to 1.0, got {self.weights.total():.6f}")
        if not (0 <= self.medium_threshold < self.high_threshold <= 100):
            raise ConfigurationError("Confidence thresholds must satisfy 0 <= medium < high <= 100")
        if self.degraded.score_ceiling >= self.high_threshold:
            raise ConfigurationError("Degraded score ceiling must stay below the high-confidence threshold")


@dataclass(frozen=True)
class PipelineConfig:
    fanout_threshold: int = 20
    direct_max_orgs: int = 50
    direct_time_budget_s: float = 55
    delegate_batch_size: int = 10
    delegate_max_orgs: int = 500
    delegate_timeout_s: float = 15
    candidate_limit: int = 200
    similarity_k: int = 100
    document_weight: float = 0.4
    max_results_per_org: int = 50
    retention_days: int = 30
    worker_chunk_size: int = 10
    worker_pause_s: float = 5
    worker_reclaim_memory: bool = True
    digest_email_top_n: int = 10
    digest_chat_top_n: int = 5


@dataclass(frozen=True)
class MatchingConfig:
    scoring: ScoringConfig
    pipeline: PipelineConfig


def _build(cls, data: Optional[Dict[str, Any]]):
    known = {f.name for f in fields(cls)}
    data = data or {}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys for {cls.__name__}: {sorted(unknown)}")
    return cls(**data)


def scoring_config_from_dict(data: Dict[str, Any]) -> ScoringConfig:
    confidence = data.get("confidence") or {}
    return ScoringConfig(
        weights=_build(Weights, data.get("weights")),
        high_threshold=int(confidence.get("high", 85)),
        medium_threshold=int(confidence.get("medium", 70)),
        similarity_band=_build(SimilarityBand, data.get("similarity_band")),
        category_default=int(data.get("category_default", 50)),
        eligibility_partial_floor=int(data.get("eligibility_partial_floor", 40)),
        timeliness=_build(TimelinessKnobs, data.get("timeliness")),
        amount=_build(AmountKnobs, data.get("amount")),
        degraded=_build(DegradedKnobs, data.get("degraded")),
        nationwide_region=str(data.get("nationwide_region", "전국")),
    )


@lru_cache(maxsize=4)
def load_matching_config(path: str | None = None) -> MatchingConfig:
    cfg_path = path or DEFAULT_PATH
    with open(cfg_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data.get("scoring"), dict):
        raise ConfigurationError(f"{cfg_path} is missing a 'scoring' section.")

    return MatchingConfig(
        scoring=scoring_config_from_dict(data["scoring"]),
        pipeline=_build(PipelineConfig, data.get("pipeline")),
    )


def get_scoring_config() -> ScoringConfig:
    return load_matching_config().scoring


def get_pipeline_config() -> PipelineConfig:
    return load_matching_config().pipeline
