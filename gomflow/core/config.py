"""
GOMFLOW runtime configuration.

One settings tree, loaded from the environment once and handed to every
service explicitly. The Matcher and the verification state machine read the
same ``VerificationPolicy`` instance so auto-approve thresholds and amount
tolerance can never drift apart.
"""
from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from gomflow.services.errors import ConfigError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(name, f"expected a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(name, f"expected an integer, got {raw!r}") from exc


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ConfigError(name, f"expected a decimal amount, got {raw!r}") from exc


@dataclass(frozen=True)
class MatchWeights:
    """Per-signal weights for submission scoring. Must sum to 1.0."""

    amount: float = 0.50
    reference: float = 0.45
    method: float = 0.03
    recency: float = 0.02

    def total(self) -> float:
        return self.amount + self.reference + self.method + self.recency


@dataclass(frozen=True)
class VerificationPolicy:
    """
    Thresholds shared by the Matcher and the verification state machine.

    ``min_confidence_auto_match`` gates both the match score and the
    extraction's overall confidence. ``amount_tolerance`` is the absolute
    difference (in major units) still counted as an exact amount match.
    """

    min_confidence_auto_match: float = 0.95
    min_match_score: float = 0.40
    amount_tolerance: Decimal = Decimal("0")
    tie_epsilon: float = 0.05
    lookback_days: int = 14
    reference_similarity_threshold: float = 0.80
    weights: MatchWeights = field(default_factory=MatchWeights)

    def __post_init__(self) -> None:
        if not 0 < self.min_confidence_auto_match <= 1:
            raise ConfigError("min_confidence_auto_match", "must be within (0, 1]")
        if not 0 <= self.min_match_score < self.min_confidence_auto_match:
            raise ConfigError(
                "min_match_score",
                "must be non-negative and below min_confidence_auto_match",
            )
        if self.amount_tolerance < 0:
            raise ConfigError("amount_tolerance", "must not be negative")
        if not 0 <= self.tie_epsilon < 1:
            raise ConfigError("tie_epsilon", "must be within [0, 1)")
        if self.lookback_days <= 0:
            raise ConfigError("lookback_days", "must be positive")
        if not 0 < self.reference_similarity_threshold <= 1:
            raise ConfigError("reference_similarity_threshold", "must be within (0, 1]")
        if abs(self.weights.total() - 1.0) > 1e-9:
            raise ConfigError("weights", f"must sum to 1.0, got {self.weights.total():.4f}")


@dataclass(frozen=True)
class ExtractionSettings:
    anthropic_api_key: Optional[str] = None
    model: str = "claude-sonnet-4-20250514"
    api_url: str = "https://api.anthropic.com/v1/messages"
    timeout_seconds: float = 60.0
    max_image_bytes: int = 10 * 1024 * 1024
    allowed_formats: Tuple[str, ...] = ("JPEG", "PNG", "WEBP")
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 10.0
    ocr_enabled: bool = True
    tesseract_cmd: Optional[str] = None
    ocr_languages: str = "eng"
    ocr_timeout_seconds: float = 20.0


@dataclass(frozen=True)
class QueueSettings:
    lanes: int = 8
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    poll_interval_seconds: float = 0.5
    sync_wait_seconds: float = 90.0
    workers_enabled: bool = True

    def __post_init__(self) -> None:
        if self.lanes <= 0:
            raise ConfigError("lanes", "must be positive")
        if self.max_attempts <= 0:
            raise ConfigError("max_attempts", "must be positive")


@dataclass(frozen=True)
class GatewaySettings:
    paymongo_webhook_secret: Optional[str] = None
    paymongo_secret_key: Optional[str] = None
    paymongo_api_url: str = "https://api.paymongo.com/v1"
    paymongo_signature_tolerance_seconds: int = 300
    billplz_x_signature_key: Optional[str] = None
    billplz_api_key: Optional[str] = None
    billplz_collection_id: Optional[str] = None
    billplz_api_url: str = "https://www.billplz.com/api/v3"
    callback_base_url: str = "http://localhost:8000"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class NotificationSettings:
    service_urls: Dict[str, str] = field(default_factory=dict)
    service_secret: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AuthSettings:
    secret_key: str = ""
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    service_secret: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    policy: VerificationPolicy = field(default_factory=VerificationPolicy)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    gateways: GatewaySettings = field(default_factory=GatewaySettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    db_path: str = "gomflow.db"


def load_settings() -> Settings:
    """Build the settings tree from environment variables."""
    policy = VerificationPolicy(
        min_confidence_auto_match=_env_float("MIN_CONFIDENCE_AUTO_MATCH", 0.95),
        min_match_score=_env_float("MIN_CONFIDENCE_SUGGEST", 0.40),
        amount_tolerance=_env_decimal("AMOUNT_TOLERANCE", "0"),
        tie_epsilon=_env_float("MATCH_TIE_EPSILON", 0.05),
        lookback_days=_env_int("MATCH_LOOKBACK_DAYS", 14),
        reference_similarity_threshold=_env_float("REFERENCE_SIMILARITY_THRESHOLD", 0.80),
    )
    allowed = tuple(
        part.strip().upper()
        for part in os.getenv("ALLOWED_IMAGE_FORMATS", "JPEG,PNG,WEBP").split(",")
        if part.strip()
    )
    extraction = ExtractionSettings(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
        timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 60.0),
        max_image_bytes=_env_int("MAX_IMAGE_SIZE", 10 * 1024 * 1024),
        allowed_formats=allowed,
        max_attempts=_env_int("EXTRACTION_MAX_ATTEMPTS", 3),
        backoff_base_seconds=_env_float("EXTRACTION_BACKOFF_SECONDS", 1.0),
        ocr_enabled=_env_bool("OCR_ENABLED", True),
        tesseract_cmd=os.getenv("TESSERACT_CMD") or None,
        ocr_languages=os.getenv("OCR_LANGUAGES", "eng"),
        ocr_timeout_seconds=_env_float("OCR_TIMEOUT_SECONDS", 20.0),
    )
    queue = QueueSettings(
        lanes=_env_int("QUEUE_LANES", 8),
        max_attempts=_env_int("QUEUE_MAX_ATTEMPTS", 5),
        backoff_base_seconds=_env_float("QUEUE_BACKOFF_SECONDS", 2.0),
        backoff_max_seconds=_env_float("QUEUE_BACKOFF_MAX_SECONDS", 300.0),
        poll_interval_seconds=_env_float("QUEUE_POLL_INTERVAL_SECONDS", 0.5),
        sync_wait_seconds=_env_float("QUEUE_SYNC_WAIT_SECONDS", 90.0),
        workers_enabled=_env_bool("QUEUE_WORKERS_ENABLED", True),
    )
    gateways = GatewaySettings(
        paymongo_webhook_secret=os.getenv("PAYMONGO_WEBHOOK_SECRET"),
        paymongo_secret_key=os.getenv("PAYMONGO_SECRET_KEY"),
        paymongo_signature_tolerance_seconds=_env_int("PAYMONGO_SIGNATURE_TOLERANCE_SECONDS", 300),
        billplz_x_signature_key=os.getenv("BILLPLZ_X_SIGNATURE_KEY"),
        billplz_api_key=os.getenv("BILLPLZ_API_KEY"),
        billplz_collection_id=os.getenv("BILLPLZ_COLLECTION_ID"),
        callback_base_url=os.getenv("GOMFLOW_PUBLIC_URL", "http://localhost:8000"),
    )
    service_urls = {
        "telegram": os.getenv("TELEGRAM_SERVICE_URL", ""),
        "discord": os.getenv("DISCORD_SERVICE_URL", ""),
        "whatsapp": os.getenv("WHATSAPP_SERVICE_URL", ""),
        "web": os.getenv("CORE_API_URL", ""),
    }
    service_secret = os.getenv("SERVICE_SECRET")
    notifications = NotificationSettings(
        service_urls={k: v for k, v in service_urls.items() if v},
        service_secret=service_secret,
        timeout_seconds=_env_float("NOTIFICATION_TIMEOUT_SECONDS", 10.0),
    )
    auth = AuthSettings(
        secret_key=os.getenv("GOMFLOW_SECRET_KEY") or secrets.token_urlsafe(32),
        access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
        service_secret=service_secret,
    )
    return Settings(
        policy=policy,
        extraction=extraction,
        queue=queue,
        gateways=gateways,
        notifications=notifications,
        auth=auth,
        db_path=os.getenv("GOMFLOW_DB_PATH", "gomflow.db"),
    )
