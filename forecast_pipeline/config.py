"""Application configuration — environment variables and defaults.

Every tunable of the extraction & validation pipeline lives HERE:
LLM provider URLs, retry bounds, worker-pool size, transcription timeout
and the outcome tolerance band.  Persistent LLM settings are stored in
user_config/llm_config.json and override the env-var defaults.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Settings:
    """Central configuration pulled from environment with safe defaults."""

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_DIR: Path = BASE_DIR / "data"
    LOGS_DIR: Path = BASE_DIR / "logs"
    PROMPTS_DIR: Path = Path(__file__).resolve().parent / "prompts"
    USER_CONFIG_DIR: Path = Path(__file__).resolve().parent / "user_config"

    # Database
    DB_PATH: Path = DATA_DIR / "forecast_pipeline.duckdb"

    # ── LLM Provider URLs ──────────────────────────────────────────
    # Defaults (overridden by llm_config.json if present, then by env vars)
    OLLAMA_URL: str = os.getenv("OLLAMA_URL", "http://localhost:11434")
    LMSTUDIO_URL: str = os.getenv("LMSTUDIO_URL", "http://localhost:1234")
    OPENAI_URL: str = os.getenv("OPENAI_URL", "https://api.openai.com")

    # Which provider to use: "ollama" | "lmstudio" | "openai"
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "ollama")

    LLM_MODEL: str = os.getenv("LLM_MODEL", "gemma3:27b")
    LLM_CONTEXT_SIZE: int = int(os.getenv("LLM_CONTEXT_SIZE", "32768"))
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.1"))

    # Used for OpenAI chat completions AND Whisper transcription
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")

    @property
    def LLM_BASE_URL(self) -> str:
        """URL of the provider selected by LLM_PROVIDER (Ollama if unknown)."""
        urls = {"lmstudio": self.LMSTUDIO_URL, "openai": self.OPENAI_URL}
        return urls.get(self.LLM_PROVIDER, self.OLLAMA_URL).rstrip("/")

    # ── Extraction ─────────────────────────────────────────────────
    EXTRACTION_MAX_ATTEMPTS: int = int(os.getenv("EXTRACTION_MAX_ATTEMPTS", "3"))
    EXTRACTION_CHUNK_CHARS: int = int(os.getenv("EXTRACTION_CHUNK_CHARS", "120000"))
    EXTRACTION_CHUNK_OVERLAP_CHARS: int = int(
        os.getenv("EXTRACTION_CHUNK_OVERLAP_CHARS", "8000")
    )
    DIRECTION_CORRECTION_ENABLED: bool = _env_bool(
        "DIRECTION_CORRECTION_ENABLED", "true"
    )
    DIRECTION_NEUTRAL_BAND_PCT: float = float(
        os.getenv("DIRECTION_NEUTRAL_BAND_PCT", "2.0")
    )

    # ── Transcription ──────────────────────────────────────────────
    TRANSCRIPTION_TIMEOUT_SECS: float = float(
        os.getenv("TRANSCRIPTION_TIMEOUT_SECS", "900")
    )
    WHISPER_MODEL: str = os.getenv("WHISPER_MODEL", "whisper-1")
    WHISPER_MAX_FILE_MB: int = int(os.getenv("WHISPER_MAX_FILE_MB", "25"))

    # ── Content sources ────────────────────────────────────────────
    RAPIDAPI_KEY: str = os.getenv("RAPIDAPI_KEY", "")
    TWITTER_API_HOST: str = os.getenv("TWITTER_API_HOST", "twitter241.p.rapidapi.com")
    SOURCE_MAX_ITEMS_PRIMARY: int = int(os.getenv("SOURCE_MAX_ITEMS_PRIMARY", "10"))
    SOURCE_MAX_ITEMS_SECONDARY: int = int(os.getenv("SOURCE_MAX_ITEMS_SECONDARY", "20"))
    SOURCE_MAX_RETRIES: int = int(os.getenv("SOURCE_MAX_RETRIES", "2"))
    SOURCE_RETRY_BASE_DELAY: float = float(os.getenv("SOURCE_RETRY_BASE_DELAY", "2.0"))

    # ── Orchestration ──────────────────────────────────────────────
    EXTRACTION_PARALLELISM: int = int(os.getenv("EXTRACTION_PARALLELISM", "3"))
    COLLECTION_LOOKBACK_DAYS: int = int(os.getenv("COLLECTION_LOOKBACK_DAYS", "7"))
    JOB_RETENTION_COMPLETED_DAYS: int = int(
        os.getenv("JOB_RETENTION_COMPLETED_DAYS", "3")
    )
    JOB_RETENTION_FAILED_DAYS: int = int(os.getenv("JOB_RETENTION_FAILED_DAYS", "7"))

    # ── Outcome validation ─────────────────────────────────────────
    # "percent" → band is VALUE % of the target (or reference) price
    # "absolute" → band is VALUE in quote currency
    OUTCOME_TOLERANCE_MODE: str = os.getenv("OUTCOME_TOLERANCE_MODE", "percent")
    OUTCOME_TOLERANCE_VALUE: float = float(os.getenv("OUTCOME_TOLERANCE_VALUE", "5.0"))

    # Feature flags
    SCHEDULER_AUTOSTART: bool = _env_bool("SCHEDULER_AUTOSTART", "false")

    LLM_CONFIG_PATH: Path = USER_CONFIG_DIR / "llm_config.json"

    def __init__(self) -> None:
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        self.load_llm_config()

    # ── Persistent LLM configuration ──────────────────────────────

    def _read_llm_file(self) -> dict[str, Any]:
        try:
            data = json.loads(self.LLM_CONFIG_PATH.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def load_llm_config(self) -> None:
        """Overlay llm_config.json (if any) on the env-var defaults."""
        self._apply_llm_config(self._read_llm_file())

    def _apply_llm_config(self, data: dict[str, Any]) -> None:
        for key, (attr, cast) in _LLM_CONFIG_FIELDS.items():
            if data.get(key) is not None:
                setattr(self, attr, cast(data[key]))

    def update_llm_config(self, data: dict[str, Any]) -> dict[str, Any]:
        """Merge ``data`` into llm_config.json and hot-patch this instance.

        Unknown keys and ``None`` values are ignored.  Returns the file's
        new contents.
        """
        updates = {
            k: v for k, v in data.items() if k in _LLM_CONFIG_FIELDS and v is not None
        }
        merged = {**self._read_llm_file(), **updates}
        self.LLM_CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        self.LLM_CONFIG_PATH.write_text(json.dumps(merged, indent=4) + "\n", encoding="utf-8")
        self._apply_llm_config(merged)
        return merged

    def get_llm_config(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, (attr, _) in _LLM_CONFIG_FIELDS.items()}


# llm_config.json key → (Settings attribute, type)
_LLM_CONFIG_FIELDS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "provider": ("LLM_PROVIDER", str),
    "ollama_url": ("OLLAMA_URL", str),
    "lmstudio_url": ("LMSTUDIO_URL", str),
    "openai_url": ("OPENAI_URL", str),
    "model": ("LLM_MODEL", str),
    "context_size": ("LLM_CONTEXT_SIZE", int),
    "temperature": ("LLM_TEMPERATURE", float),
}

settings = Settings()
