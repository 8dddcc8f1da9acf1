from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # veritas/internal_core/config.py -> veritas -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def _resolve_existing_path_or_empty(candidates: list[Path]) -> str:
    for candidate in candidates:
        try:
            resolved = candidate.expanduser().resolve()
        except Exception:
            continue
        if resolved.exists():
            return str(resolved)
    return ""


DEFAULT_WAKE_WORDS: tuple[str, ...] = ("veritas", "rise")


@dataclass(frozen=True)
class LiveConfig:
    VERITAS_TRANSCRIPT_WINDOW: int
    VERITAS_CHECKIN_RATIO: float
    VERITAS_COMPLETION_TIMEOUT_SEC: float
    VERITAS_WAKE_WORDS: tuple[str, ...]
    VERITAS_LLM_BACKEND: str
    VERITAS_LLM_MAX_TOKENS: int
    VERITAS_LLM_TEMPERATURE: float
    VERITAS_LLAMA_CPP_MODEL: str
    VERITAS_LLAMA_CPP_N_CTX: int
    VERITAS_LLAMA_CPP_N_GPU_LAYERS: int
    VERITAS_LLAMA_CPP_N_THREADS: Optional[int]
    VERITAS_LLAMA_CPP_CHAT_FORMAT: str
    VERITAS_GEMINI_MODEL: str
    GEMINI_API_KEY: str
    VERITAS_SESSION_TTL_SECONDS: int
    VERITAS_SPEECH_ENABLED: bool
    VERITAS_LLM_DEBUG_LOG: str
    VERITAS_LOG_LEVEL: str

    @property
    def llm_enabled(self) -> bool:
        return self.VERITAS_LLM_BACKEND not in {"", "none", "off"}


def load_config() -> LiveConfig:
    project_root = _project_root()
    default_llama_cpp_model = _resolve_existing_path_or_empty(
        [
            project_root / "models" / "veritas.gguf",
            project_root.parent / "models" / "veritas.gguf",
        ]
    )

    return LiveConfig(
        VERITAS_TRANSCRIPT_WINDOW=max(1, _getenv_int("VERITAS_TRANSCRIPT_WINDOW", 15)),
        VERITAS_CHECKIN_RATIO=min(1.0, max(0.05, _getenv_float("VERITAS_CHECKIN_RATIO", 0.75))),
        VERITAS_COMPLETION_TIMEOUT_SEC=max(0.1, _getenv_float("VERITAS_COMPLETION_TIMEOUT_SEC", 8.0)),
        VERITAS_WAKE_WORDS=tuple(
            word.lower() for word in _getenv_list("VERITAS_WAKE_WORDS", DEFAULT_WAKE_WORDS)
        ),
        VERITAS_LLM_BACKEND=_getenv_str("VERITAS_LLM_BACKEND", "none").strip().lower(),
        VERITAS_LLM_MAX_TOKENS=_getenv_int("VERITAS_LLM_MAX_TOKENS", 256),
        VERITAS_LLM_TEMPERATURE=_getenv_float("VERITAS_LLM_TEMPERATURE", 0.0),
        VERITAS_LLAMA_CPP_MODEL=_getenv_str("VERITAS_LLAMA_CPP_MODEL", default_llama_cpp_model),
        VERITAS_LLAMA_CPP_N_CTX=_getenv_int("VERITAS_LLAMA_CPP_N_CTX", 4096),
        VERITAS_LLAMA_CPP_N_GPU_LAYERS=_getenv_int("VERITAS_LLAMA_CPP_N_GPU_LAYERS", -1),
        VERITAS_LLAMA_CPP_N_THREADS=_getenv_opt_int("VERITAS_LLAMA_CPP_N_THREADS"),
        VERITAS_LLAMA_CPP_CHAT_FORMAT=_getenv_str("VERITAS_LLAMA_CPP_CHAT_FORMAT", "gemma"),
        VERITAS_GEMINI_MODEL=_getenv_str("VERITAS_GEMINI_MODEL", "gemini-2.5-flash"),
        GEMINI_API_KEY=_getenv_str("GEMINI_API_KEY", ""),
        VERITAS_SESSION_TTL_SECONDS=_getenv_int("VERITAS_SESSION_TTL_SECONDS", 14400),
        VERITAS_SPEECH_ENABLED=_getenv_bool("VERITAS_SPEECH_ENABLED", False),
        VERITAS_LLM_DEBUG_LOG=_getenv_str("VERITAS_LLM_DEBUG_LOG", ""),
        VERITAS_LOG_LEVEL=_getenv_str("VERITAS_LOG_LEVEL", "INFO"),
    )
