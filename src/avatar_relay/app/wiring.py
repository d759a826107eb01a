from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from avatar_relay.config.prompts import resolve_system_prompt
from avatar_relay.config.settings import (
    AppSettings,
    LLMProviderName,
    SecretsBackend,
    SecretsSettings,
    STTProviderName,
)
from avatar_relay.core.llm.provider import ReplyPlanner, SemaphoreReplyPlanner
from avatar_relay.core.reply.dispatch import ReplyDispatcher
from avatar_relay.core.storage.history import (
    AuditLog,
    HistoryStore,
    InMemoryAuditLog,
    InMemoryHistoryStore,
)
from avatar_relay.core.storage.secrets import (
    SECRET_ENV_VARS,
    EncryptedFileSecretStore,
    KeyringSecretStore,
    SecretStore,
)
from avatar_relay.core.storage.sql import SqlStore
from avatar_relay.core.stt.backend import STTBackend, STTStreamOptions
from avatar_relay.providers.avatar.heygen import HeyGenStreamingAvatarClient
from avatar_relay.providers.llm.gemini import GeminiReplyPlanner
from avatar_relay.providers.llm.openai_chat import OpenAIReplyPlanner
from avatar_relay.providers.stt.deepgram import DeepgramRealtimeSTTBackend

SECRETS_PASSPHRASE_ENV = "AVATAR_RELAY_SECRETS_PASSPHRASE"


@dataclass(slots=True)
class Stores:
    history: HistoryStore
    audit: AuditLog
    sql: SqlStore | None = None

    def dispose(self) -> None:
        if self.sql is not None:
            self.sql.dispose()


def create_secret_store(
    settings: SecretsSettings,
    *,
    config_path: Path,
    passphrase: str | None = None,
) -> SecretStore:
    passphrase = passphrase or os.getenv(SECRETS_PASSPHRASE_ENV)

    if settings.backend == SecretsBackend.KEYRING:
        return KeyringSecretStore()

    if settings.backend == SecretsBackend.ENCRYPTED_FILE:
        if not passphrase:
            raise ValueError(
                "encrypted_file secrets backend requires a passphrase; "
                f"set {SECRETS_PASSPHRASE_ENV} or pass passphrase explicitly"
            )
        path = Path(settings.encrypted_file_path)
        if not path.is_absolute():
            path = config_path.parent / path
        return EncryptedFileSecretStore(path=path, passphrase=passphrase)

    raise ValueError(f"Unsupported secrets backend: {settings.backend}")


def get_secret(secrets: SecretStore, *, key: str) -> str | None:
    value = secrets.get(key)
    if value:
        return value
    env_var = SECRET_ENV_VARS.get(key)
    if env_var:
        env = os.getenv(env_var)
        if env:
            return env
    return None


def require_secret(secrets: SecretStore, *, key: str) -> str:
    value = get_secret(secrets, key=key)
    if value:
        return value
    env_var = SECRET_ENV_VARS.get(key, key.upper())
    raise ValueError(f"Missing secret `{key}` (or env var {env_var})")


def create_stores(settings: AppSettings) -> Stores:
    url = settings.storage.database_url
    if not url:
        return Stores(history=InMemoryHistoryStore(), audit=InMemoryAuditLog())

    store = SqlStore(database_url=url)
    store.create_schema()
    return Stores(history=store, audit=store, sql=store)


def create_stt_backend(settings: AppSettings, *, secrets: SecretStore) -> STTBackend:
    if settings.provider.stt == STTProviderName.DEEPGRAM:
        api_key = require_secret(secrets, key="deepgram_api_key")
        options = STTStreamOptions(
            sample_rate_hz=settings.audio.sample_rate_hz,
            channels=settings.audio.channels,
            model=settings.stt.model,
            language=settings.stt.language,
            punctuate=settings.stt.punctuate,
            smart_format=settings.stt.smart_format,
            interim_results=settings.stt.interim_results,
            endpointing_ms=settings.stt.endpointing_ms,
        )
        return DeepgramRealtimeSTTBackend(
            api_key=api_key,
            options=options,
            open_timeout_s=settings.stt.open_timeout_s,
        )

    raise ValueError(f"Unsupported STT provider: {settings.provider.stt}")


def create_reply_planner(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    audit: AuditLog | None = None,
) -> ReplyPlanner:
    system_prompt = resolve_system_prompt(settings.system_prompt)

    if settings.provider.llm == LLMProviderName.OPENAI:
        api_key = require_secret(secrets, key="openai_api_key")
        base: ReplyPlanner = OpenAIReplyPlanner(
            api_key=api_key,
            model=settings.llm.openai_model,
            system_prompt=system_prompt,
            timeout_s=settings.llm.timeout_s,
            audit=audit,
        )
    elif settings.provider.llm == LLMProviderName.GEMINI:
        api_key = require_secret(secrets, key="google_api_key")
        base = GeminiReplyPlanner(
            api_key=api_key,
            model=settings.llm.gemini_model,
            system_prompt=system_prompt,
            audit=audit,
        )
    else:
        raise ValueError(f"Unsupported LLM provider: {settings.provider.llm}")

    return SemaphoreReplyPlanner(
        inner=base,
        semaphore=asyncio.Semaphore(settings.llm.concurrency_limit),
    )


def create_avatar_client(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    audit: AuditLog | None = None,
) -> HeyGenStreamingAvatarClient:
    api_key = require_secret(secrets, key="heygen_api_key")
    return HeyGenStreamingAvatarClient(
        api_key=api_key,
        base_url=settings.avatar.base_url,
        timeout_s=settings.avatar.timeout_s,
        audit=audit,
    )


def create_dispatcher(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    stores: Stores,
) -> ReplyDispatcher:
    planner = create_reply_planner(settings, secrets=secrets, audit=stores.audit)
    avatar = (
        create_avatar_client(settings, secrets=secrets, audit=stores.audit)
        if settings.avatar.enabled
        else None
    )
    return ReplyDispatcher(
        planner=planner,
        history=stores.history,
        avatar=avatar,
        audit=stores.audit,
        timeout_s=settings.llm.timeout_s,
        generate_titles=settings.llm.generate_titles,
    )


KeyVerifier = Callable[[str], Awaitable[bool]]


def key_verifiers(settings: AppSettings) -> list[tuple[str, KeyVerifier]]:
    """Secret keys the configured providers need, each with its online check."""
    verifiers: list[tuple[str, KeyVerifier]] = []
    if settings.provider.stt == STTProviderName.DEEPGRAM:
        verifiers.append(("deepgram_api_key", DeepgramRealtimeSTTBackend.verify_api_key))
    if settings.provider.llm == LLMProviderName.OPENAI:
        verifiers.append(("openai_api_key", OpenAIReplyPlanner.verify_api_key))
    elif settings.provider.llm == LLMProviderName.GEMINI:
        verifiers.append(("google_api_key", GeminiReplyPlanner.verify_api_key))
    return verifiers
