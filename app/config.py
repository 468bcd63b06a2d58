from __future__ import annotations
import os
from dataclasses import dataclass

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")

@dataclass
class Settings:
    # Ollama / models
    ollama_base: str = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "qwen3:0.6b")
    ollama_think: bool = _as_bool(os.getenv("OLLAMA_THINK"), False)

    # LLM call budget
    llm_timeout_seconds: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
    llm_max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "1"))
    # pause between calls when analysing a batch of emails
    llm_batch_delay_seconds: float = float(os.getenv("LLM_BATCH_DELAY_SECONDS", "1.0"))

    # ---- store (persistence RPC server) ----
    store_url: str = os.getenv("STORE_URL", "http://localhost:9004")
    store_data_dir: str = os.getenv("STORE_DATA_DIR", "data")

    # Detection defaults for orgs without their own config row
    detection_mode: str = os.getenv("DETECTION_MODE", "hybrid")
    confidence_threshold: int = int(os.getenv("CONFIDENCE_THRESHOLD", "70"))
    auto_complete_threshold: int = int(os.getenv("AUTO_COMPLETE_THRESHOLD", "95"))

    # Generation defaults
    ai_enhanced_generation: bool = _as_bool(os.getenv("AI_ENHANCED_GENERATION"), False)

_settings: Settings | None = None

def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
