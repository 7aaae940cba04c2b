import os
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import text

from ..config import Settings, settings

_boot_cache = None


@dataclass
class BootResult:
    ok: bool
    checks: List[Dict]


def _check(name: str, ok: bool, reason: Optional[str] = None, **extra) -> Dict:
    return {"name": name, "ok": ok, "reason": None if ok else reason, **extra}


def _check_database() -> Dict:
    from ..db import engine

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return _check("database", True, dialect=engine.dialect.name)
    except Exception as exc:
        return _check("database", False, str(exc), dialect=engine.dialect.name)


def _check_writable(name: str, path: str) -> Dict:
    p = os.path.expanduser(os.path.expandvars(path))
    try:
        os.makedirs(p, exist_ok=True)
        testf = os.path.join(p, ".wtest")
        with open(testf, "w") as f:
            f.write("ok")
        os.remove(testf)
        return _check(name, True, path=p)
    except OSError as exc:
        return _check(name, False, str(exc), path=p)


def run_boot_checks(force: bool = False, cfg: Settings = settings) -> BootResult:
    global _boot_cache
    if _boot_cache is not None and not force:
        return _boot_cache

    checks: List[Dict] = [_check_database()]

    identity_ok = bool(cfg.supabase_jwt_secret or (cfg.supabase_url and cfg.supabase_service_key))
    checks.append(_check("identity", identity_ok, "set SUPABASE_JWT_SECRET or SUPABASE_URL + SUPABASE_SERVICE_KEY"))
    checks.append(
        _check("storage", cfg.storage_configured, "SUPABASE_URL / SUPABASE_SERVICE_KEY missing", bucket=cfg.storage_bucket)
    )

    providers = [name for name, key in (("openai", cfg.openai_api_key), ("gemini", cfg.google_ai_api_key)) if key]
    # no provider is allowed: the pipeline degrades to placeholder output
    checks.append(_check("ai.providers", True, providers=providers or ["fallback"], mock_transcription=cfg.mock_transcription))
    checks.append(_check_writable("writable.log_dir", cfg.log_dir))

    critical_names = {"database", "identity", "storage"}
    ok_critical = all(c["ok"] for c in checks if c["name"] in critical_names)
    _boot_cache = BootResult(ok=ok_critical, checks=checks)

    for c in checks:
        if not c["ok"]:
            logger.bind(tag="startup.boot").warning(f"boot check {c['name']} failed: {c['reason']}")

    if cfg.strict_boot and not ok_critical:
        logger.bind(tag="startup.boot").error("critical boot checks failed; exiting (STRICT_BOOT=1)")
        sys.exit(1)

    return _boot_cache


def get_boot_cache() -> BootResult:
    return _boot_cache or run_boot_checks(force=False)
