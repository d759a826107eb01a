from __future__ import annotations

import json
from dataclasses import dataclass, field

import avatar_relay.main as cli
from avatar_relay import __version__
from avatar_relay.core.storage.secrets import InMemorySecretStore
from avatar_relay.domain.models import AvatarSession, FinalizedUtterance, ReplyResponse, UIAction
from avatar_relay.providers.avatar.heygen import AvatarAPIError


@dataclass(slots=True)
class FakeDispatcher:
    seen: list[FinalizedUtterance] = field(default_factory=list)
    closed: bool = False

    async def dispatch(self, utterance: FinalizedUtterance) -> ReplyResponse:
        self.seen.append(utterance)
        return ReplyResponse(spoken="Namaste!", hindi_line="नमस्ते", ui=UIAction())

    async def close(self) -> None:
        self.closed = True


@dataclass(slots=True)
class FakeAvatarClient:
    error: Exception | None = None
    closed: bool = False

    async def create_session(self, avatar_id: str, *, voice_id: str | None = None) -> AvatarSession:
        if self.error is not None:
            raise self.error
        return AvatarSession(session_id="hg-1", url="wss://x", access_token="tok")

    async def interrupt(self, session_id: str) -> dict:
        return {"code": 100}

    async def stop(self, session_id: str) -> dict:
        return {"code": 100}

    async def close(self) -> None:
        self.closed = True


def _args(tmp_path, *rest: str) -> list[str]:
    return ["--config", str(tmp_path / "settings.json"), *rest]


def test_parser_reads_subcommands(tmp_path):
    parser = cli.build_parser()

    args = parser.parse_args(_args(tmp_path, "serve", "--port", "9000"))
    assert (args.command, args.port, args.host, args.http_port) == ("serve", 9000, None, None)

    args = parser.parse_args(_args(tmp_path, "serve", "--http-port", "0"))
    assert args.http_port == 0

    args = parser.parse_args(_args(tmp_path, "talk", "I want tea", "--session-id", "s1"))
    assert (args.text, args.session_id) == ("I want tea", "s1")

    args = parser.parse_args(_args(tmp_path, "mic", "--greeting", "Hello"))
    assert args.greeting == "Hello"


def test_version_prints_and_exits_zero(capsys):
    assert cli.main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == __version__


def test_missing_command_returns_usage_error(capsys):
    assert cli.main([]) == 2
    assert "avatar-relay" in capsys.readouterr().out


def test_invalid_settings_file_returns_error(tmp_path, capsys):
    (tmp_path / "settings.json").write_text('{"server": {"port": 0}}', encoding="utf-8")
    assert cli.main(_args(tmp_path, "talk", "hi", "--session-id", "s1")) == 2
    assert "failed to load settings" in capsys.readouterr().out


def test_talk_prints_reply_json(monkeypatch, tmp_path, capsys):
    dispatcher = FakeDispatcher()
    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: InMemorySecretStore())
    monkeypatch.setattr(cli, "create_dispatcher", lambda *_a, **_k: dispatcher)

    code = cli.main(_args(tmp_path, "talk", "Hello", "--session-id", "s1"))

    assert code == 0
    assert dispatcher.seen == [FinalizedUtterance(text="Hello", session_id="s1")]
    assert dispatcher.closed is True
    printed = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert printed == {"spoken": "Namaste!", "hindiLine": "नमस्ते", "ui": {"action": "NONE", "payload": {}}}


def test_talk_returns_error_on_missing_secret(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: InMemorySecretStore())
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr("builtins.print", lambda *_a, **_k: None)

    assert cli.main(_args(tmp_path, "talk", "Hello", "--session-id", "s1")) == 2


def test_avatar_session_prints_connection_info(monkeypatch, tmp_path, capsys):
    client = FakeAvatarClient()
    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: InMemorySecretStore())
    monkeypatch.setattr(cli, "create_avatar_client", lambda *_a, **_k: client)

    assert cli.main(_args(tmp_path, "avatar-session")) == 0
    assert json.loads(capsys.readouterr().out.strip())["session_id"] == "hg-1"
    assert client.closed is True


def test_avatar_api_rejection_returns_one(monkeypatch, tmp_path):
    client = FakeAvatarClient(error=AvatarAPIError("streaming.new", 401, "bad key"))
    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: InMemorySecretStore())
    monkeypatch.setattr(cli, "create_avatar_client", lambda *_a, **_k: client)
    monkeypatch.setattr("builtins.print", lambda *_a, **_k: None)

    assert cli.main(_args(tmp_path, "avatar-session")) == 1
    assert client.closed is True


def test_verify_keys_reports_each_provider(monkeypatch, tmp_path, capsys):
    secrets = InMemorySecretStore()
    secrets.set("deepgram_api_key", "dg-123456")
    secrets.set("openai_api_key", "sk-bad")

    async def accept(_key: str) -> bool:
        return True

    async def reject(_key: str) -> bool:
        return False

    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: secrets)
    monkeypatch.setattr(
        cli,
        "key_verifiers",
        lambda _settings: [("deepgram_api_key", accept), ("openai_api_key", reject)],
    )

    assert cli.main(_args(tmp_path, "verify-keys")) == 1
    out = capsys.readouterr().out
    assert "deepgram_api_key: ok (dg-****)" in out
    assert "openai_api_key: rejected (sk-****)" in out


def test_verify_keys_reports_missing_key(monkeypatch, tmp_path, capsys):
    async def accept(_key: str) -> bool:
        return True

    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: InMemorySecretStore())
    monkeypatch.delenv("HEYGEN_API_KEY", raising=False)
    monkeypatch.setattr(cli, "key_verifiers", lambda _settings: [("heygen_api_key", accept)])

    assert cli.main(_args(tmp_path, "verify-keys")) == 1
    assert "heygen_api_key: missing" in capsys.readouterr().out
