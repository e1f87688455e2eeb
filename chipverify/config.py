"""
Configuration module for the chip verification service.

All settings come from environment variables and are resolved once at
startup into an immutable Settings object. Nothing in the request path
reads the environment.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from .exceptions import ConfigurationError

# ============================================================
# Recognised values
# ============================================================

ENVIRONMENTS = ("dev", "stage", "prod")
VERIFIER_MODES = ("production", "development")
REGISTRY_BACKENDS = ("sqlite", "supabase")
AUDIT_MIRRORS = ("none", "s3_object_lock")

DEFAULT_DB_PATH = "data/chipverify.db"


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, resolved once at startup."""

    env: str = "dev"
    verifier_mode: str = "production"
    dev_chip_sig: Optional[str] = None

    registry_backend: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    store_timeout_seconds: float = 5.0

    cors_allow_origin: str = "*"
    audit_export_token: Optional[str] = None

    audit_mirror: str = "none"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "chipverify/scan-events/"
    s3_retention_days: int = 365
    s3_legal_hold: str = "OFF"

    log_level: str = "INFO"
    log_json: bool = True

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env == "prod"


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes")


def _positive_float(value: str, name: str) -> float:
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive")
    return parsed


def _choice(value: str, name: str, allowed) -> str:
    value = value.strip().lower()
    if value not in allowed:
        raise ConfigurationError(f"{name} must be one of {', '.join(allowed)}, got {value!r}")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        The resolved Settings

    Raises:
        ConfigurationError: If a value is malformed or a combination is unusable
    """
    env = os.environ if environ is None else environ

    try:
        retention_days = int(env.get("S3_RETENTION_DAYS", "365"))
    except ValueError:
        raise ConfigurationError("S3_RETENTION_DAYS must be an integer")

    settings = Settings(
        env=_choice(env.get("CHIPVERIFY_ENV", "dev"), "CHIPVERIFY_ENV", ENVIRONMENTS),
        verifier_mode=_choice(env.get("CHIP_VERIFIER_MODE", "production"), "CHIP_VERIFIER_MODE", VERIFIER_MODES),
        dev_chip_sig=env.get("DEV_CHIP_SIG") or None,
        registry_backend=_choice(env.get("CHIP_REGISTRY_BACKEND", "sqlite"), "CHIP_REGISTRY_BACKEND", REGISTRY_BACKENDS),
        db_path=env.get("CHIPVERIFY_DB_PATH", DEFAULT_DB_PATH),
        supabase_url=(env.get("SUPABASE_URL") or "").rstrip("/") or None,
        supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
        store_timeout_seconds=_positive_float(env.get("STORE_TIMEOUT_SECONDS", "5"), "STORE_TIMEOUT_SECONDS"),
        cors_allow_origin=env.get("CORS_ALLOW_ORIGIN", "*"),
        audit_export_token=env.get("AUDIT_EXPORT_TOKEN") or None,
        audit_mirror=_choice(env.get("AUDIT_MIRROR", "none"), "AUDIT_MIRROR", AUDIT_MIRRORS),
        s3_bucket=env.get("S3_BUCKET") or None,
        s3_prefix=env.get("S3_PREFIX", "chipverify/scan-events/"),
        s3_retention_days=retention_days,
        s3_legal_hold=env.get("S3_LEGAL_HOLD", "OFF"),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        log_json=_flag(env.get("LOG_JSON"), True),
    )

    problems = [name for name, ok in validate_settings(settings).items() if not ok]
    if problems:
        raise ConfigurationError("invalid configuration: " + ", ".join(problems))
    return settings


# ============================================================
# Validation
# ============================================================

def validate_settings(settings: Settings) -> Dict[str, bool]:
    """
    Check the combinations that cannot be caught field by field.
    Returns dict of check name -> passed.
    """
    checks = {
        "development_verifier_outside_prod": not (
            settings.verifier_mode == "development" and settings.is_production()
        ),
        "dev_chip_sig_only_in_development": settings.dev_chip_sig is None
        or settings.verifier_mode == "development",
    }

    if settings.registry_backend == "supabase":
        checks["supabase_url"] = bool(settings.supabase_url)
        checks["supabase_service_role_key"] = bool(settings.supabase_service_role_key)
    else:
        checks["db_path"] = bool(settings.db_path) and not Path(settings.db_path).is_dir()

    if settings.audit_mirror == "s3_object_lock":
        checks["s3_bucket"] = bool(settings.s3_bucket)
        checks["s3_retention_days"] = settings.s3_retention_days > 0

    return checks
