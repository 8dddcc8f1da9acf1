from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class SpeechOutputError(RuntimeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class SpeechOutput(ABC):
    @abstractmethod
    def speak(self, text: str) -> None: ...

    @abstractmethod
    def name(self) -> str: ...


class LoggingSpeechOutput(SpeechOutput):
    """Writes assistant speech to the log instead of a synthesizer."""

    def speak(self, text: str) -> None:
        logger.info("Veritas says: %s", text)

    def name(self) -> str:
        return "log"


class RecordingSpeechOutput(SpeechOutput):
    def __init__(self) -> None:
        self.spoken: list[str] = []

    def speak(self, text: str) -> None:
        self.spoken.append(text)

    def name(self) -> str:
        return "recording"


class NullSpeechOutput(SpeechOutput):
    def speak(self, text: str) -> None:
        return None

    def name(self) -> str:
        return "none"


def build_speech_output(enabled: bool) -> SpeechOutput:
    return LoggingSpeechOutput() if enabled else NullSpeechOutput()
