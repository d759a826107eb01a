from __future__ import annotations

import pytest

from avatar_relay.app.wiring import (
    Stores,
    create_dispatcher,
    create_reply_planner,
    create_secret_store,
    create_stores,
    create_stt_backend,
    get_secret,
    key_verifiers,
    require_secret,
)
from avatar_relay.config.settings import (
    AppSettings,
    LLMProviderName,
    SecretsBackend,
    SecretsSettings,
    StorageSettings,
)
from avatar_relay.core.llm.provider import SemaphoreReplyPlanner
from avatar_relay.core.storage.history import InMemoryAuditLog, InMemoryHistoryStore
from avatar_relay.core.storage.secrets import (
    EncryptedFileSecretStore,
    InMemorySecretStore,
    KeyringSecretStore,
)
from avatar_relay.core.storage.sql import SqlStore
from avatar_relay.providers.avatar.heygen import HeyGenStreamingAvatarClient
from avatar_relay.providers.llm.gemini import GeminiReplyPlanner
from avatar_relay.providers.llm.openai_chat import OpenAIReplyPlanner
from avatar_relay.providers.stt.deepgram import DeepgramRealtimeSTTBackend


def _secrets(**items: str) -> InMemorySecretStore:
    store = InMemorySecretStore()
    for key, value in items.items():
        store.set(key, value)
    return store


@pytest.fixture(autouse=True)
def _clear_secret_env(monkeypatch):
    for name in ("DEEPGRAM_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY", "HEYGEN_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("AVATAR_RELAY_SECRETS_PASSPHRASE", raising=False)


def test_create_secret_store_keyring_returns_keyring_store(tmp_path):
    store = create_secret_store(
        SecretsSettings(backend=SecretsBackend.KEYRING),
        config_path=tmp_path / "settings.json",
    )

    assert isinstance(store, KeyringSecretStore)


def test_create_secret_store_encrypted_file_resolves_relative_path(tmp_path):
    store = create_secret_store(
        SecretsSettings(backend=SecretsBackend.ENCRYPTED_FILE, encrypted_file_path="secrets.json"),
        config_path=tmp_path / "settings.json",
        passphrase="pw",
    )

    assert isinstance(store, EncryptedFileSecretStore)
    assert store.path == tmp_path / "secrets.json"


def test_create_secret_store_encrypted_file_reads_env_passphrase(monkeypatch, tmp_path):
    monkeypatch.setenv("AVATAR_RELAY_SECRETS_PASSPHRASE", "pw")
    store = create_secret_store(
        SecretsSettings(backend=SecretsBackend.ENCRYPTED_FILE, encrypted_file_path="s.json"),
        config_path=tmp_path / "settings.json",
    )

    assert isinstance(store, EncryptedFileSecretStore)


def test_create_secret_store_encrypted_file_requires_passphrase(tmp_path):
    with pytest.raises(ValueError):
        create_secret_store(
            SecretsSettings(backend=SecretsBackend.ENCRYPTED_FILE, encrypted_file_path="secrets.json"),
            config_path=tmp_path / "settings.json",
        )


def test_secret_lookup_falls_back_to_env(monkeypatch):
    secrets = _secrets(openai_api_key="sk-store")
    assert get_secret(secrets, key="openai_api_key") == "sk-store"
    assert get_secret(secrets, key="heygen_api_key") is None

    monkeypatch.setenv("HEYGEN_API_KEY", "hg-env")
    assert require_secret(secrets, key="heygen_api_key") == "hg-env"


def test_require_secret_names_the_env_var():
    with pytest.raises(ValueError, match="DEEPGRAM_API_KEY"):
        require_secret(InMemorySecretStore(), key="deepgram_api_key")


def test_create_stores_defaults_to_memory():
    stores = create_stores(AppSettings())

    assert isinstance(stores.history, InMemoryHistoryStore)
    assert isinstance(stores.audit, InMemoryAuditLog)
    assert stores.sql is None
    stores.dispose()


def test_create_stores_uses_sql_when_configured(tmp_path):
    settings = AppSettings(storage=StorageSettings(database_url=f"sqlite:///{tmp_path / 'h.db'}"))
    stores = create_stores(settings)

    assert isinstance(stores.sql, SqlStore)
    assert stores.history is stores.sql
    assert stores.audit is stores.sql
    assert (tmp_path / "h.db").exists()
    stores.dispose()


def test_create_stt_backend_passes_stream_options():
    settings = AppSettings()
    settings.stt.endpointing_ms = 250
    backend = create_stt_backend(settings, secrets=_secrets(deepgram_api_key="dg"))

    assert isinstance(backend, DeepgramRealtimeSTTBackend)
    assert backend.options.endpointing_ms == 250
    assert backend.options.sample_rate_hz == 16000


def test_create_stt_backend_requires_key():
    with pytest.raises(ValueError):
        create_stt_backend(AppSettings(), secrets=InMemorySecretStore())


def test_create_reply_planner_wraps_provider_in_semaphore():
    settings = AppSettings()
    settings.llm.concurrency_limit = 2
    planner = create_reply_planner(settings, secrets=_secrets(openai_api_key="sk"))

    assert isinstance(planner, SemaphoreReplyPlanner)
    assert isinstance(planner.inner, OpenAIReplyPlanner)

    settings.provider.llm = LLMProviderName.GEMINI
    gemini = create_reply_planner(settings, secrets=_secrets(google_api_key="g"))
    assert isinstance(gemini.inner, GeminiReplyPlanner)


def test_create_dispatcher_skips_avatar_when_disabled():
    settings = AppSettings()
    settings.avatar.enabled = False
    stores = Stores(history=InMemoryHistoryStore(), audit=InMemoryAuditLog())

    dispatcher = create_dispatcher(settings, secrets=_secrets(openai_api_key="sk"), stores=stores)

    assert dispatcher.avatar is None
    assert dispatcher.history is stores.history


def test_create_dispatcher_builds_avatar_client():
    stores = Stores(history=InMemoryHistoryStore(), audit=InMemoryAuditLog())
    dispatcher = create_dispatcher(
        AppSettings(),
        secrets=_secrets(openai_api_key="sk", heygen_api_key="hg"),
        stores=stores,
    )

    assert isinstance(dispatcher.avatar, HeyGenStreamingAvatarClient)
    assert dispatcher.avatar.audit is stores.audit


def test_key_verifiers_follow_configured_providers():
    settings = AppSettings()
    assert [key for key, _ in key_verifiers(settings)] == ["deepgram_api_key", "openai_api_key"]

    settings.provider.llm = LLMProviderName.GEMINI
    assert [key for key, _ in key_verifiers(settings)] == ["deepgram_api_key", "google_api_key"]
