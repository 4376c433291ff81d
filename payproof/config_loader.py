import os
from dataclasses import dataclass, field
from typing import Optional

import yaml

from .errors import ConfigError


DEFAULTS = {
    "weights": {"amount": 0.45, "reference": 0.30, "method": 0.15, "confidence": 0.10},
    "tolerances": {"amount": 1.00, "max_deviation_pct": 20.0},
    "thresholds": {"suggest": 0.5, "auto": 0.9},
    "flags": {
        "significant_mismatch_amount": 10.00,
        "low_confidence": 0.3,
        "max_processing_attempts": 3,
    },
    "extraction": {
        "base_url": "http://localhost:3005",
        "api_key": None,
        "timeout_seconds": 30.0,
        "max_retries": 2,
        "backoff_seconds": 1.0,
    },
    "batch": {"batch_size": 50, "workers": 4, "claim_ttl_seconds": 600},
    "max_suggestions": 3,
}

# env var -> (section, key, cast)
ENV_OVERRIDES = {
    "PAYPROOF_EXTRACTION_URL": ("extraction", "base_url", str),
    "PAYPROOF_EXTRACTION_API_KEY": ("extraction", "api_key", str),
    "PAYPROOF_EXTRACTION_TIMEOUT": ("extraction", "timeout_seconds", float),
    "PAYPROOF_AUTO_THRESHOLD": ("thresholds", "auto", float),
    "PAYPROOF_SUGGEST_THRESHOLD": ("thresholds", "suggest", float),
    "PAYPROOF_BATCH_WORKERS": ("batch", "workers", int),
    "PAYPROOF_BATCH_SIZE": ("batch", "batch_size", int),
}


@dataclass(frozen=True)
class ScoringWeights:
    amount: float = 0.45
    reference: float = 0.30
    method: float = 0.15
    confidence: float = 0.10

    def total(self) -> float:
        return self.amount + self.reference + self.method + self.confidence


@dataclass(frozen=True)
class ExtractionSettings:
    base_url: str = "http://localhost:3005"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    max_retries: int = 2
    backoff_seconds: float = 1.0


@dataclass(frozen=True)
class BatchSettings:
    batch_size: int = 50
    workers: int = 4
    claim_ttl_seconds: int = 600


@dataclass(frozen=True)
class VerificationConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    amount_tolerance: float = 1.00
    max_deviation_pct: float = 20.0
    suggest_threshold: float = 0.5
    auto_threshold: float = 0.9
    significant_mismatch_amount: float = 10.00
    low_confidence_threshold: float = 0.3
    max_processing_attempts: int = 3
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    max_suggestions: int = 3

    def __post_init__(self):
        if abs(self.weights.total() - 1.0) > 1e-6:
            raise ConfigError(f"scoring weights must sum to 1.0 (got {self.weights.total():.4f})")
        if not 0.0 <= self.suggest_threshold <= self.auto_threshold <= 1.0:
            raise ConfigError(
                f"thresholds must satisfy 0 <= suggest <= auto <= 1 "
                f"(suggest={self.suggest_threshold}, auto={self.auto_threshold})"
            )
        if self.amount_tolerance < 0 or self.significant_mismatch_amount < 0:
            raise ConfigError("amount tolerances must be non-negative")
        if self.batch.workers < 1 or self.batch.batch_size < 1:
            raise ConfigError("batch.workers and batch.batch_size must be >= 1")


def _default_config_path() -> str:
    return os.getenv(
        "PAYPROOF_CONFIG",
        os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "verification.yml"),
    )


def _merge(base: dict, override: dict) -> dict:
    # shallow merge per section
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in base.items()}
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k].update(v)
        else:
            merged[k] = v
    return merged


def _apply_env(cfg: dict) -> dict:
    for env_key, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_key)
        if raw is None or raw.strip() == "":
            continue
        try:
            cfg[section][key] = cast(raw.strip())
        except ValueError as e:
            raise ConfigError(f"{env_key}={raw!r} is not a valid {cast.__name__}") from e
    return cfg


def load_raw_config(path: Optional[str] = None) -> dict:
    path = path or _default_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        cfg = {}
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return _apply_env(_merge(DEFAULTS, cfg))


def build_config(raw: dict) -> VerificationConfig:
    try:
        return VerificationConfig(
            weights=ScoringWeights(**raw["weights"]),
            amount_tolerance=float(raw["tolerances"]["amount"]),
            max_deviation_pct=float(raw["tolerances"]["max_deviation_pct"]),
            suggest_threshold=float(raw["thresholds"]["suggest"]),
            auto_threshold=float(raw["thresholds"]["auto"]),
            significant_mismatch_amount=float(raw["flags"]["significant_mismatch_amount"]),
            low_confidence_threshold=float(raw["flags"]["low_confidence"]),
            max_processing_attempts=int(raw["flags"]["max_processing_attempts"]),
            extraction=ExtractionSettings(**raw["extraction"]),
            batch=BatchSettings(**raw["batch"]),
            max_suggestions=int(raw["max_suggestions"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"invalid verification config: {e}") from e


def load_verification_config(path: Optional[str] = None) -> VerificationConfig:
    return build_config(load_raw_config(path))
