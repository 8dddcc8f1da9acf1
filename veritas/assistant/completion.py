from __future__ import annotations

"""
Completion service backends for the live decision engine.

Design intent:
- Hide the model runtime (local GGUF via llama_cpp, hosted Gemini) behind one `complete()` call.
- Import heavy clients lazily so the service runs rule-only without them installed.
- Wrap every backend failure in CompletionServiceError; the engine turns it into NONE.
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Union

from veritas.assistant.prompts import CompletionPrompt
from veritas.internal_core.config import LiveConfig

logger = logging.getLogger(__name__)

DEFAULT_DEBUG_LOG_PATH = "/tmp/veritas_completion_raw.log"


class CompletionServiceError(RuntimeError):
    """Raised when a completion backend cannot produce output."""


class CompletionService(ABC):
    name: str = "base"

    @abstractmethod
    def complete(self, prompt: CompletionPrompt) -> str:
        """Return the raw model text for one prompt."""


def resolve_debug_log_path(raw: str | None) -> str | None:
    value = (raw or "").strip()
    if not value:
        return None
    if value.lower() in {"1", "true", "on", "yes"}:
        return DEFAULT_DEBUG_LOG_PATH
    return value


def append_debug_log(path: str | None, *, stage: str, raw: str, metadata: dict[str, Any] | None = None) -> None:
    if not path:
        return
    try:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).isoformat()
        meta = json.dumps(metadata or {}, ensure_ascii=True)
        payload = (
            f"[{stamp}] stage={stage} meta={meta}\n"
            "-----BEGIN COMPLETION RAW-----\n"
            f"{raw}\n"
            "-----END COMPLETION RAW-----\n"
        )
        with target.open("a", encoding="utf-8") as f:
            f.write(payload)
    except Exception:
        # Debug logging must never break the decision loop.
        return


class LlamaCppCompletionService(CompletionService):
    """Local GGUF model through llama_cpp's chat completion API."""

    name = "llama_cpp"

    def __init__(
        self,
        *,
        model_path: str,
        n_ctx: int = 4096,
        n_gpu_layers: int = -1,
        n_threads: int | None = None,
        chat_format: str | None = "gemma",
        max_tokens: int = 256,
        temperature: float = 0.0,
        debug_log_path: str | None = None,
    ) -> None:
        self.model_path = model_path
        self.n_ctx = int(n_ctx)
        self.n_gpu_layers = int(n_gpu_layers)
        self.n_threads = n_threads
        self.chat_format = chat_format
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self.debug_log_path = debug_log_path
        self._llm: Any = None
        self._lock = threading.Lock()
        self.debug: dict[str, Any] = {
            "chat_format": chat_format,
            "chat_format_applied": False,
            "chat_format_compat_mode": "not_loaded",
            "response_format_applied": False,
            "response_format_compat_mode": "not_requested",
            "response_format_supported": None,
        }

    def _load(self) -> Any:
        if self._llm is not None:
            return self._llm
        resolved = (self.model_path or "").strip()
        if not resolved:
            raise CompletionServiceError(
                "llama_cpp model path is missing. Set VERITAS_LLAMA_CPP_MODEL or place a GGUF under models/."
            )
        if not os.path.exists(resolved):
            raise CompletionServiceError(f"llama_cpp model file not found: {resolved}")

        try:
            from llama_cpp import Llama  # type: ignore
        except Exception as exc:
            raise CompletionServiceError(f"llama_cpp import failed: {exc}") from exc

        llm_kwargs: dict[str, Any] = {
            "model_path": resolved,
            "n_ctx": self.n_ctx,
            "n_gpu_layers": self.n_gpu_layers,
            "verbose": False,
        }
        if self.chat_format:
            llm_kwargs["chat_format"] = self.chat_format
        if self.n_threads is not None:
            llm_kwargs["n_threads"] = int(self.n_threads)
        try:
            try:
                llm = Llama(**llm_kwargs)
                self.debug["chat_format_applied"] = "chat_format" in llm_kwargs
                self.debug["chat_format_compat_mode"] = "constructor_arg"
            except TypeError as exc:
                if "chat_format" not in str(exc):
                    raise
                llm_kwargs.pop("chat_format", None)
                llm = Llama(**llm_kwargs)
                self.debug["chat_format_applied"] = False
                self.debug["chat_format_compat_mode"] = "constructor_omitted_unsupported"
        except CompletionServiceError:
            raise
        except Exception as exc:
            raise CompletionServiceError(f"llama_cpp model load failed: {exc}") from exc
        self._llm = llm
        return llm

    def _run_chat_completion(self, llm: Any, prompt: CompletionPrompt) -> str:
        completion_kwargs: dict[str, Any] = {
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "temperature": self.temperature,
            "top_p": 1.0,
            "max_tokens": self.max_tokens,
        }
        supported = self.debug["response_format_supported"]
        if supported is not False:
            completion_kwargs["response_format"] = {"type": "json_object"}
            self.debug["response_format_compat_mode"] = "explicit_arg"

        try:
            resp = llm.create_chat_completion(**completion_kwargs)
            if "response_format" in completion_kwargs:
                self.debug["response_format_applied"] = True
                self.debug["response_format_supported"] = True
        except TypeError as exc:
            if "response_format" in str(exc) and "response_format" in completion_kwargs:
                completion_kwargs.pop("response_format", None)
                resp = llm.create_chat_completion(**completion_kwargs)
                self.debug["response_format_applied"] = False
                self.debug["response_format_supported"] = False
                self.debug["response_format_compat_mode"] = "omitted_unsupported"
            else:
                raise
        return str(resp["choices"][0]["message"]["content"] or "").strip()

    def complete(self, prompt: CompletionPrompt) -> str:
        # One llama context cannot serve concurrent requests.
        with self._lock:
            llm = self._load()
            append_debug_log(self.debug_log_path, stage="prompt_input", raw=prompt.user, metadata=dict(self.debug))
            started = time.perf_counter()
            try:
                raw = self._run_chat_completion(llm, prompt)
            except Exception as exc:
                raise CompletionServiceError(f"llama_cpp completion failed: {exc}") from exc
            elapsed = round((time.perf_counter() - started) * 1000.0, 2)
            append_debug_log(
                self.debug_log_path,
                stage="raw_output",
                raw=raw,
                metadata={**self.debug, "elapsed_ms": elapsed},
            )
            return raw


class GeminiCompletionService(CompletionService):
    """Hosted Gemini model through the google-genai client."""

    name = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.5-flash",
        max_tokens: int = 256,
        temperature: float = 0.0,
        debug_log_path: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self.debug_log_path = debug_log_path
        self._client: Any = None
        self._lock = threading.Lock()

    def _get_client(self) -> Any:
        with self._lock:
            if self._client is not None:
                return self._client
            if not self.api_key:
                raise CompletionServiceError("GEMINI_API_KEY is not set.")
            try:
                from google import genai  # type: ignore
                self._client = genai.Client(api_key=self.api_key)
            except Exception as exc:
                raise CompletionServiceError(f"google-genai client init failed: {exc}") from exc
            return self._client

    def complete(self, prompt: CompletionPrompt) -> str:
        client = self._get_client()
        append_debug_log(self.debug_log_path, stage="prompt_input", raw=prompt.user, metadata={"model": self.model})
        started = time.perf_counter()
        try:
            response = client.models.generate_content(
                model=self.model,
                contents=prompt.user,
                config={
                    "system_instruction": prompt.system,
                    "response_mime_type": "application/json",
                    "temperature": self.temperature,
                    "max_output_tokens": self.max_tokens,
                },
            )
        except Exception as exc:
            raise CompletionServiceError(f"Gemini completion failed: {exc}") from exc
        raw = str(getattr(response, "text", "") or "").strip()
        append_debug_log(
            self.debug_log_path,
            stage="raw_output",
            raw=raw,
            metadata={"model": self.model, "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 2)},
        )
        return raw


ScriptedResponse = Union[str, Exception]


class ScriptedCompletionService(CompletionService):
    """Replay canned responses in order; a callable computes the response from the prompt."""

    name = "scripted"

    def __init__(
        self,
        responses: Iterable[ScriptedResponse] | Callable[[CompletionPrompt], str] = (),
        *,
        delay_sec: float = 0.0,
    ) -> None:
        self._responder = responses if callable(responses) else None
        self._queue: deque[ScriptedResponse] = deque() if callable(responses) else deque(responses)
        self.delay_sec = float(delay_sec)
        self.prompts: list[CompletionPrompt] = []
        self._lock = threading.Lock()

    def complete(self, prompt: CompletionPrompt) -> str:
        with self._lock:
            self.prompts.append(prompt)
            queued = self._queue.popleft() if self._queue else None
        if self._responder is not None:
            item: ScriptedResponse = self._responder(prompt)
        elif queued is not None:
            item = queued
        else:
            item = '{"action": "NONE"}'
        if self.delay_sec > 0:
            time.sleep(self.delay_sec)
        if isinstance(item, Exception):
            raise CompletionServiceError(str(item)) from item
        return item


def build_completion_service(config: LiveConfig) -> CompletionService | None:
    """Select the configured backend; "none" keeps the engine rule-only."""
    backend = config.VERITAS_LLM_BACKEND
    debug_log_path = resolve_debug_log_path(config.VERITAS_LLM_DEBUG_LOG)
    if not config.llm_enabled:
        return None
    if backend in {"llama_cpp", "llama-cpp", "gguf"}:
        return LlamaCppCompletionService(
            model_path=config.VERITAS_LLAMA_CPP_MODEL,
            n_ctx=config.VERITAS_LLAMA_CPP_N_CTX,
            n_gpu_layers=config.VERITAS_LLAMA_CPP_N_GPU_LAYERS,
            n_threads=config.VERITAS_LLAMA_CPP_N_THREADS,
            chat_format=config.VERITAS_LLAMA_CPP_CHAT_FORMAT or None,
            max_tokens=config.VERITAS_LLM_MAX_TOKENS,
            temperature=config.VERITAS_LLM_TEMPERATURE,
            debug_log_path=debug_log_path,
        )
    if backend == "gemini":
        return GeminiCompletionService(
            api_key=config.GEMINI_API_KEY,
            model=config.VERITAS_GEMINI_MODEL,
            max_tokens=config.VERITAS_LLM_MAX_TOKENS,
            temperature=config.VERITAS_LLM_TEMPERATURE,
            debug_log_path=debug_log_path,
        )
    raise ValueError(f"Unknown VERITAS_LLM_BACKEND: {backend!r}")
