import os
from dataclasses import dataclass
from typing import Optional


# ======================================================
# Utils
# ======================================================
def _mask_key(key: str) -> str:
    """
    Masque une clé sensible pour les logs
    """
    if not key or len(key) < 8:
        return "****"
    return key[:4] + "****" + key[-4:]


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} doit être un nombre (reçu: {raw!r}).")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} doit être un entier (reçu: {raw!r}).")


# ======================================================
# Settings
# ======================================================
@dataclass(frozen=True)
class Settings:
    supabase_url: str = ""
    supabase_key: str = ""
    db_debug: bool = False
    store_timeout: float = 15.0     # chargement initial des 4 collections
    session_timeout: float = 10.0   # vérification de session
    audit_limit: int = 100
    log_level: str = "INFO"

    def require_supabase(self) -> None:
        """
        Les deux variables sont obligatoires dès qu'on construit la passerelle.
        """
        if not self.supabase_url:
            raise RuntimeError("SUPABASE_URL manquant. Définis cette variable d'environnement.")
        if not self.supabase_key:
            raise RuntimeError("SUPABASE_KEY manquant. Définis cette variable d'environnement.")

    @property
    def masked_key(self) -> str:
        return _mask_key(self.supabase_key)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings(
            supabase_url=os.getenv("SUPABASE_URL", "").strip(),
            supabase_key=os.getenv("SUPABASE_KEY", "").strip(),
            db_debug=os.getenv("DB_DEBUG", "0") == "1",
            store_timeout=_float_env("STORE_TIMEOUT_SECONDS", 15.0),
            session_timeout=_float_env("SESSION_TIMEOUT_SECONDS", 10.0),
            audit_limit=_int_env("AUDIT_LIMIT", 100),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
