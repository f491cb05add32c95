# chatpipe/config/settings.py

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from chatpipe.core.errors import ConfigurationError

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_MODEL = "openai/gpt-oss-120b"
DEFAULT_UPSTREAM_BASE_URL = "https://integrate.api.nvidia.com/v1"
DEFAULT_RELAY_URL = "http://127.0.0.1:8000/api/chat"


@dataclass
class Settings:
    # Upstream provider (used by the relay only). A missing key is reported
    # per request by the relay, not at import time.
    upstream_api_key: Optional[str] = None
    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    upstream_temperature: float = 1.0
    upstream_top_p: float = 1.0
    upstream_max_tokens: int = 4096

    default_model: str = DEFAULT_MODEL

    # Relay endpoint as seen by the streaming client
    relay_url: str = DEFAULT_RELAY_URL
    relay_host: str = "127.0.0.1"
    relay_port: int = 8000

    # Transport tuning knobs
    timeout_seconds: float = 60.0
    max_attempts: int = 2           # background (non-streaming) calls only

    # Context window
    max_context_messages: int = 10
    max_context_tokens: int = 100000
    history_fetch_limit: int = 20

    # Enrichment
    summary_max_chars: int = 8000
    exchange_snippet_chars: int = 500
    enrichment_workers: int = 4

    db_path: str = str(BASE_DIR / "chatpipe" / "data" / "chatpipe.db")

    @property
    def upstream_configured(self) -> bool:
        return bool(self.upstream_api_key and self.upstream_api_key.strip())


def _strip_outer_quotes(s: str) -> str:
    """
    Users sometimes put KEY="value" including quotes in their environment.
    This removes a single pair of matching outer quotes.
    """
    s2 = (s or "").strip()
    if len(s2) >= 2 and ((s2[0] == s2[-1]) and s2[0] in ("'", '"')):
        return s2[1:-1].strip()
    return s2


def _env_str(name: str, default: str) -> str:
    return _strip_outer_quotes(os.getenv(name, default)) or default


def _parse_float_env(name: str, default: float, min_val: float = 0.0) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        return value if value >= min_val else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 1_000_000) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def normalize_api_base(raw: Optional[str]) -> str:
    """
    Ensures an OpenAI-compatible base URL ends with /v1.

    Accepts a full endpoint by mistake (".../v1/chat/completions") and trims
    it back to the /v1 root.
    """
    base = _strip_outer_quotes((raw or DEFAULT_UPSTREAM_BASE_URL).strip())

    if not (base.startswith("http://") or base.startswith("https://")):
        raise ConfigurationError(f"UPSTREAM_BASE_URL is invalid (missing scheme): {base!r}")

    while base.endswith("/"):
        base = base[:-1]

    if "/v1/" in base:
        return base.split("/v1/")[0] + "/v1"

    if base.endswith("/v1"):
        return base

    return base + "/v1"


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).

    Never raises for a missing upstream key: the relay reports that per
    request. Ensures the data directory for the reference store exists.
    """
    # --- Upstream provider ---
    api_key = (
        _strip_outer_quotes(os.getenv("UPSTREAM_API_KEY", ""))
        or _strip_outer_quotes(os.getenv("NVIDIA_API_KEY", ""))
        or None
    )
    base_url = normalize_api_base(os.getenv("UPSTREAM_BASE_URL") or DEFAULT_UPSTREAM_BASE_URL)

    default_model = _env_str("CHATPIPE_DEFAULT_MODEL", DEFAULT_MODEL)

    # --- DB path (optional override) ---
    default_db_path = BASE_DIR / "chatpipe" / "data" / "chatpipe.db"
    db_path = Path(_env_str("CHATPIPE_DB_PATH", str(default_db_path)))
    db_path.parent.mkdir(parents=True, exist_ok=True)

    return Settings(
        upstream_api_key=api_key,
        upstream_base_url=base_url,
        upstream_temperature=_parse_float_env("UPSTREAM_TEMPERATURE", 1.0),
        upstream_top_p=_parse_float_env("UPSTREAM_TOP_P", 1.0),
        upstream_max_tokens=_parse_int_env("UPSTREAM_MAX_TOKENS", 4096, min_val=1, max_val=131072),
        default_model=default_model,
        relay_url=_env_str("CHATPIPE_RELAY_URL", DEFAULT_RELAY_URL),
        relay_host=_env_str("CHATPIPE_RELAY_HOST", "127.0.0.1"),
        relay_port=_parse_int_env("CHATPIPE_RELAY_PORT", 8000, min_val=1, max_val=65535),
        timeout_seconds=_parse_float_env("CHATPIPE_TIMEOUT_SECONDS", 60.0, min_val=0.1),
        max_attempts=_parse_int_env("CHATPIPE_MAX_ATTEMPTS", 2, min_val=1, max_val=5),
        max_context_messages=_parse_int_env("CHATPIPE_MAX_CONTEXT_MESSAGES", 10),
        max_context_tokens=_parse_int_env("CHATPIPE_MAX_CONTEXT_TOKENS", 100000, max_val=10_000_000),
        history_fetch_limit=_parse_int_env("CHATPIPE_HISTORY_FETCH_LIMIT", 20, min_val=1),
        summary_max_chars=_parse_int_env("CHATPIPE_SUMMARY_MAX_CHARS", 8000, min_val=1),
        exchange_snippet_chars=_parse_int_env("CHATPIPE_EXCHANGE_SNIPPET_CHARS", 500, min_val=1),
        enrichment_workers=_parse_int_env("CHATPIPE_ENRICHMENT_WORKERS", 4, min_val=1, max_val=32),
        db_path=str(db_path),
    )
