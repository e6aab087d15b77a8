import os
from dataclasses import dataclass
from functools import lru_cache


ROLE_ADMIN = "ADMIN"
ROLE_EDITOR = "EDITOR"
ROLE_VIEWER = "VIEWER"
WIKI_ROLES = (ROLE_ADMIN, ROLE_EDITOR, ROLE_VIEWER)
WIKI_ROLE_DESCRIPTIONS = {
    ROLE_ADMIN: "Administrator with full access",
    ROLE_EDITOR: "Can view and edit pages",
    ROLE_VIEWER: "Can view pages only",
}


def _truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    raw = str(value).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = str(os.getenv(name) or default).strip()
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class WikiSettings:
    max_title_length: int
    max_content_bytes: int
    use_transactions: bool
    audit_enabled: bool
    reparse_workers: int
    seed_roles: bool
    lock_lease_seconds: int
    lock_wait_ms: int


@lru_cache
def get_wiki_settings() -> WikiSettings:
    return WikiSettings(
        max_title_length=_int_env("WIKI_MAX_TITLE_LENGTH", 255),
        max_content_bytes=_int_env("WIKI_MAX_CONTENT_BYTES", 1_000_000, minimum=1000),
        use_transactions=_truthy(os.getenv("WIKI_USE_TRANSACTIONS"), default=False),
        audit_enabled=_truthy(os.getenv("WIKI_AUDIT_ENABLED"), default=True),
        reparse_workers=_int_env("WIKI_REPARSE_WORKERS", 1),
        seed_roles=_truthy(os.getenv("WIKI_SEED_ROLES"), default=True),
        lock_lease_seconds=_int_env("WIKI_LOCK_LEASE_SECONDS", 30),
        lock_wait_ms=_int_env("WIKI_LOCK_WAIT_MS", 5000, minimum=0),
    )


@dataclass(frozen=True)
class WikiEnvValidation:
    errors: tuple[str, ...]
    warnings: tuple[str, ...]


def validate_wiki_environment() -> WikiEnvValidation:
    errors: list[str] = []
    warnings: list[str] = []
    for name in ("WIKI_MAX_TITLE_LENGTH", "WIKI_MAX_CONTENT_BYTES", "WIKI_REPARSE_WORKERS", "WIKI_LOCK_LEASE_SECONDS"):
        raw = os.getenv(name)
        if raw is None:
            continue
        try:
            if int(str(raw).strip()) <= 0:
                errors.append(f"{name} must be a positive integer.")
        except ValueError:
            errors.append(f"{name} is not an integer: {raw!r}")
    if not os.getenv("MONGODB_URI"):
        warnings.append("MONGODB_URI is not set via environment. Application may rely on .env fallback.")
    if _truthy(os.getenv("WIKI_USE_TRANSACTIONS")) and str(os.getenv("MONGODB_URI") or "").startswith("mongomock://"):
        errors.append("WIKI_USE_TRANSACTIONS requires a replica set; mongomock does not support transactions.")
    if not get_wiki_settings().audit_enabled:
        warnings.append("WIKI_AUDIT_ENABLED is false; permission changes will not be audited.")
    return WikiEnvValidation(errors=tuple(errors), warnings=tuple(warnings))
