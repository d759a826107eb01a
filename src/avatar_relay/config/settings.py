from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class STTProviderName(str, Enum):
    DEEPGRAM = "deepgram"


class LLMProviderName(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"


class SecretsBackend(str, Enum):
    KEYRING = "keyring"
    ENCRYPTED_FILE = "encrypted_file"


@dataclass(slots=True)
class ProviderSettings:
    stt: STTProviderName = STTProviderName.DEEPGRAM
    llm: LLMProviderName = LLMProviderName.OPENAI

    def validate(self) -> None:
        if not isinstance(self.stt, STTProviderName):
            raise ValueError("invalid stt provider")
        if not isinstance(self.llm, LLMProviderName):
            raise ValueError("invalid llm provider")


@dataclass(slots=True)
class AudioSettings:
    sample_rate_hz: int = 16000
    channels: int = 1
    frame_samples: int = 4096
    input_device: str = ""

    def validate(self) -> None:
        if self.sample_rate_hz not in (8000, 16000):
            raise ValueError("sample_rate_hz must be 8000 or 16000")
        if self.channels != 1:
            raise ValueError("channels must be 1 (mono)")
        if self.frame_samples <= 0:
            raise ValueError("frame_samples must be > 0")
        if self.input_device is None:
            raise ValueError("input_device must be a string")


@dataclass(slots=True)
class STTSettings:
    model: str = "nova-3"
    language: str = "multi"
    endpointing_ms: int = 100
    punctuate: bool = True
    smart_format: bool = True
    interim_results: bool = True
    keepalive_interval_s: float = 10.0
    fallback_delay_ms: int = 500
    open_timeout_s: float = 5.0

    def validate(self) -> None:
        if not self.model:
            raise ValueError("model must be non-empty")
        if not self.language:
            raise ValueError("language must be non-empty")
        if self.endpointing_ms < 0:
            raise ValueError("endpointing_ms must be >= 0")
        if self.keepalive_interval_s <= 0:
            raise ValueError("keepalive_interval_s must be > 0")
        if self.fallback_delay_ms <= 0:
            raise ValueError("fallback_delay_ms must be > 0")
        if self.open_timeout_s <= 0:
            raise ValueError("open_timeout_s must be > 0")


@dataclass(slots=True)
class LLMSettings:
    concurrency_limit: int = 4
    timeout_s: float = 30.0
    openai_model: str = "gpt-5-chat-latest"
    gemini_model: str = "gemini-3-flash-preview"
    generate_titles: bool = True

    def validate(self) -> None:
        if self.concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be > 0")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if not self.openai_model:
            raise ValueError("openai_model must be non-empty")
        if not self.gemini_model:
            raise ValueError("gemini_model must be non-empty")


@dataclass(slots=True)
class AvatarSettings:
    enabled: bool = True
    base_url: str = "https://api.heygen.com/v1"
    avatar_id: str = "Marianne_CasualLook_public"
    voice_id: str = ""
    timeout_s: float = 15.0

    def validate(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        if not self.avatar_id:
            raise ValueError("avatar_id must be non-empty")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")


@dataclass(slots=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8787
    http_port: int = 8788
    allowed_origins: list[str] = field(default_factory=list)

    def validate(self) -> None:
        if not self.host:
            raise ValueError("host must be non-empty")
        if not (0 < self.port <= 65535):
            raise ValueError("port must be in 1..65535")
        if not (0 <= self.http_port <= 65535):
            raise ValueError("http_port must be in 0..65535 (0 disables the HTTP API)")
        if any(not isinstance(o, str) or not o for o in self.allowed_origins):
            raise ValueError("allowed_origins must contain non-empty strings")


@dataclass(slots=True)
class StorageSettings:
    database_url: str = ""

    def validate(self) -> None:
        if self.database_url is None:
            raise ValueError("database_url must be a string")


@dataclass(slots=True)
class SecretsSettings:
    backend: SecretsBackend = SecretsBackend.KEYRING
    encrypted_file_path: str = "secrets.json"

    def validate(self) -> None:
        if not isinstance(self.backend, SecretsBackend):
            raise ValueError("invalid secrets backend")
        if self.backend == SecretsBackend.ENCRYPTED_FILE and not self.encrypted_file_path:
            raise ValueError("encrypted_file_path must be set for encrypted_file backend")


@dataclass(slots=True)
class AppSettings:
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    stt: STTSettings = field(default_factory=STTSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)
    avatar: AvatarSettings = field(default_factory=AvatarSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    secrets: SecretsSettings = field(default_factory=SecretsSettings)
    system_prompt: str = ""

    def validate(self) -> None:
        self.provider.validate()
        self.audio.validate()
        self.stt.validate()
        self.llm.validate()
        self.avatar.validate()
        self.server.validate()
        self.storage.validate()
        self.secrets.validate()


def to_dict(settings: AppSettings) -> dict[str, Any]:
    return {
        "provider": {"stt": settings.provider.stt.value, "llm": settings.provider.llm.value},
        "audio": {
            "sample_rate_hz": settings.audio.sample_rate_hz,
            "channels": settings.audio.channels,
            "frame_samples": settings.audio.frame_samples,
            "input_device": settings.audio.input_device,
        },
        "stt": {
            "model": settings.stt.model,
            "language": settings.stt.language,
            "endpointing_ms": settings.stt.endpointing_ms,
            "punctuate": settings.stt.punctuate,
            "smart_format": settings.stt.smart_format,
            "interim_results": settings.stt.interim_results,
            "keepalive_interval_s": settings.stt.keepalive_interval_s,
            "fallback_delay_ms": settings.stt.fallback_delay_ms,
            "open_timeout_s": settings.stt.open_timeout_s,
        },
        "llm": {
            "concurrency_limit": settings.llm.concurrency_limit,
            "timeout_s": settings.llm.timeout_s,
            "openai_model": settings.llm.openai_model,
            "gemini_model": settings.llm.gemini_model,
            "generate_titles": settings.llm.generate_titles,
        },
        "avatar": {
            "enabled": settings.avatar.enabled,
            "base_url": settings.avatar.base_url,
            "avatar_id": settings.avatar.avatar_id,
            "voice_id": settings.avatar.voice_id,
            "timeout_s": settings.avatar.timeout_s,
        },
        "server": {
            "host": settings.server.host,
            "port": settings.server.port,
            "http_port": settings.server.http_port,
            "allowed_origins": list(settings.server.allowed_origins),
        },
        "storage": {"database_url": settings.storage.database_url},
        "secrets": {
            "backend": settings.secrets.backend.value,
            "encrypted_file_path": settings.secrets.encrypted_file_path,
        },
        "system_prompt": settings.system_prompt,
    }


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def from_dict(data: dict[str, Any]) -> AppSettings:
    provider = _section(data, "provider")
    audio = _section(data, "audio")
    stt = _section(data, "stt")
    llm = _section(data, "llm")
    avatar = _section(data, "avatar")
    server = _section(data, "server")
    storage = _section(data, "storage")
    secrets = _section(data, "secrets")

    origins_raw = server.get("allowed_origins") or []
    if not isinstance(origins_raw, list):
        raise ValueError("server.allowed_origins must be a list")

    settings = AppSettings(
        provider=ProviderSettings(
            stt=STTProviderName(provider.get("stt", STTProviderName.DEEPGRAM.value)),
            llm=LLMProviderName(provider.get("llm", LLMProviderName.OPENAI.value)),
        ),
        audio=AudioSettings(
            sample_rate_hz=int(audio.get("sample_rate_hz", 16000)),
            channels=int(audio.get("channels", 1)),
            frame_samples=int(audio.get("frame_samples", 4096)),
            input_device=str(audio.get("input_device") or ""),
        ),
        stt=STTSettings(
            model=str(stt.get("model", "nova-3")),
            language=str(stt.get("language", "multi")),
            endpointing_ms=int(stt.get("endpointing_ms", 100)),
            punctuate=bool(stt.get("punctuate", True)),
            smart_format=bool(stt.get("smart_format", True)),
            interim_results=bool(stt.get("interim_results", True)),
            keepalive_interval_s=float(stt.get("keepalive_interval_s", 10.0)),
            fallback_delay_ms=int(stt.get("fallback_delay_ms", 500)),
            open_timeout_s=float(stt.get("open_timeout_s", 5.0)),
        ),
        llm=LLMSettings(
            concurrency_limit=int(llm.get("concurrency_limit", 4)),
            timeout_s=float(llm.get("timeout_s", 30.0)),
            openai_model=str(llm.get("openai_model", "gpt-5-chat-latest")),
            gemini_model=str(llm.get("gemini_model", "gemini-3-flash-preview")),
            generate_titles=bool(llm.get("generate_titles", True)),
        ),
        avatar=AvatarSettings(
            enabled=bool(avatar.get("enabled", True)),
            base_url=str(avatar.get("base_url", "https://api.heygen.com/v1")),
            avatar_id=str(avatar.get("avatar_id", "Marianne_CasualLook_public")),
            voice_id=str(avatar.get("voice_id") or ""),
            timeout_s=float(avatar.get("timeout_s", 15.0)),
        ),
        server=ServerSettings(
            host=str(server.get("host", "0.0.0.0")),
            port=int(server.get("port", 8787)),
            http_port=int(server.get("http_port", 8788)),
            allowed_origins=[str(o) for o in origins_raw],
        ),
        storage=StorageSettings(database_url=str(storage.get("database_url") or "")),
        secrets=SecretsSettings(
            backend=SecretsBackend(secrets.get("backend", SecretsBackend.KEYRING.value)),
            encrypted_file_path=str(secrets.get("encrypted_file_path", "secrets.json")),
        ),
        system_prompt=str(data.get("system_prompt", "")),
    )
    settings.validate()
    return settings


def load_settings(path: Path) -> AppSettings:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("settings file must contain a JSON object")
    return from_dict(raw)


def save_settings(path: Path, settings: AppSettings) -> None:
    settings.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_dict(settings), ensure_ascii=False, indent=2), encoding="utf-8")
