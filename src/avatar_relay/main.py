from __future__ import annotations

import argparse
import asyncio
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

from avatar_relay.app.wiring import (
    Stores,
    create_avatar_client,
    create_dispatcher,
    create_secret_store,
    create_stores,
    create_stt_backend,
    get_secret,
    key_verifiers,
)
from avatar_relay.config.paths import default_settings_path
from avatar_relay.config.settings import AppSettings, load_settings
from avatar_relay.core.reply.dispatch import ReplyDispatcher
from avatar_relay.core.storage.secrets import mask_secret
from avatar_relay.domain.models import FinalizedUtterance

if TYPE_CHECKING:
    import uvicorn

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

logger = logging.getLogger(__name__)


def configure_logging(*, verbose: bool = False, log_file: Path | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger().setLevel(level)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        logging.getLogger().addHandler(handler)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="avatar-relay")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument(
        "--config",
        type=Path,
        default=default_settings_path(),
        help="Path to settings JSON (default: user config dir)",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Also log to a rotating file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the relay websocket server")
    serve.add_argument("--host", default=None, help="Bind address (default: settings)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: settings)")
    serve.add_argument(
        "--http-port",
        type=int,
        default=None,
        help="HTTP API port, 0 disables it (default: settings)",
    )

    mic = sub.add_parser("mic", help="Stream the local microphone to a running relay")
    mic.add_argument("--url", default=None, help="Relay URL (default: ws://127.0.0.1:<port>)")
    mic.add_argument("--session-id", default=None, help="Avatar session id to correlate with")
    mic.add_argument("--greeting", default=None, help="Text utterance to send on connect")

    talk = sub.add_parser("talk", help="Run one reply dispatch and print the reply JSON")
    talk.add_argument("text", help="What the user said")
    talk.add_argument("--session-id", required=True, help="Chat/avatar session id")

    avatar_session = sub.add_parser("avatar-session", help="Create and start an avatar session")
    avatar_session.add_argument("--avatar-id", default=None)
    avatar_session.add_argument("--voice-id", default=None)

    avatar_interrupt = sub.add_parser("avatar-interrupt", help="Interrupt the avatar's speech")
    avatar_interrupt.add_argument("session_id")

    avatar_stop = sub.add_parser("avatar-stop", help="Stop an avatar session")
    avatar_stop.add_argument("session_id")

    sub.add_parser("verify-keys", help="Check the configured provider API keys online")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__

        print(__version__)
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    configure_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        settings = _load_settings_or_default(args.config)
    except (OSError, ValueError) as exc:
        print(f"Error: failed to load settings from {args.config}: {exc}", flush=True)
        return 2

    try:
        if args.command == "serve":
            return asyncio.run(_serve(settings, args))
        if args.command == "mic":
            return asyncio.run(_mic(settings, args))
        if args.command == "talk":
            return asyncio.run(_talk(settings, args))
        if args.command in ("avatar-session", "avatar-interrupt", "avatar-stop"):
            return asyncio.run(_avatar(settings, args))
        if args.command == "verify-keys":
            return asyncio.run(_verify_keys(settings, args))
    except KeyboardInterrupt:
        return 0

    parser.print_help()
    return 2


async def _serve(settings: AppSettings, args: argparse.Namespace) -> int:
    from avatar_relay.app.server import RelayServer

    stores: Stores | None = None
    try:
        secrets = create_secret_store(settings.secrets, config_path=args.config)
        stores = create_stores(settings)
        backend = create_stt_backend(settings, secrets=secrets)
        dispatcher = create_dispatcher(settings, secrets=secrets, stores=stores)
    except Exception as exc:
        print(f"Error: failed to initialize providers: {exc}", flush=True)
        if stores is not None:
            stores.dispose()
        return 2

    host = args.host or settings.server.host
    http_port = settings.server.http_port if args.http_port is None else args.http_port
    server = RelayServer(
        backend=backend,
        dispatcher=dispatcher,
        audit=stores.audit,
        host=host,
        port=args.port or settings.server.port,
        allowed_origins=list(settings.server.allowed_origins),
        keepalive_interval_s=settings.stt.keepalive_interval_s,
        fallback_delay_s=settings.stt.fallback_delay_ms / 1000.0,
    )
    http_server = _build_http_server(settings, dispatcher, host=host, port=http_port)

    tasks = [asyncio.create_task(server.serve_forever())]
    if http_server is not None:
        tasks.append(asyncio.create_task(http_server.serve()))
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    except OSError as exc:
        print(f"Error: failed to start relay server: {exc}", flush=True)
        return 2
    finally:
        if http_server is not None:
            http_server.should_exit = True
        await asyncio.gather(*tasks[1:], return_exceptions=True)
        tasks[0].cancel()
        await asyncio.gather(tasks[0], return_exceptions=True)
        stores.dispose()
    return 0


def _build_http_server(
    settings: AppSettings, dispatcher: ReplyDispatcher, *, host: str, port: int
) -> uvicorn.Server | None:
    if port == 0:
        return None

    import uvicorn

    from avatar_relay.app.http_api import create_http_app

    app = create_http_app(
        dispatcher=dispatcher,
        avatar=dispatcher.avatar,
        allowed_origins=list(settings.server.allowed_origins),
        default_avatar_id=settings.avatar.avatar_id,
        default_voice_id=settings.avatar.voice_id,
    )
    # Keep the root handlers installed by configure_logging.
    config = uvicorn.Config(app, host=host, port=port, log_config=None, lifespan="off")
    logger.info(f"[HTTP] Serving API on http://{host}:{port}")
    return uvicorn.Server(config)


async def _mic(settings: AppSettings, args: argparse.Namespace) -> int:
    from avatar_relay.app.mic_client import MicRelayClient

    url = args.url or f"ws://127.0.0.1:{settings.server.port}"
    client = MicRelayClient(
        audio=settings.audio,
        url=url,
        session_id=args.session_id,
        greeting=args.greeting,
    )
    return await client.run()


async def _talk(settings: AppSettings, args: argparse.Namespace) -> int:
    stores: Stores | None = None
    try:
        secrets = create_secret_store(settings.secrets, config_path=args.config)
        stores = create_stores(settings)
        dispatcher = create_dispatcher(settings, secrets=secrets, stores=stores)
        utterance = FinalizedUtterance(text=args.text, session_id=args.session_id)
    except Exception as exc:
        print(f"Error: failed to initialize providers: {exc}", flush=True)
        if stores is not None:
            stores.dispose()
        return 2

    try:
        response = await dispatcher.dispatch(utterance)
        print(json.dumps(response.to_dict(), ensure_ascii=False), flush=True)
    finally:
        await dispatcher.close()
        stores.dispose()
    return 0


async def _avatar(settings: AppSettings, args: argparse.Namespace) -> int:
    from avatar_relay.providers.avatar.heygen import AvatarAPIError

    stores: Stores | None = None
    try:
        secrets = create_secret_store(settings.secrets, config_path=args.config)
        stores = create_stores(settings)
        client = create_avatar_client(settings, secrets=secrets, audit=stores.audit)
    except Exception as exc:
        print(f"Error: failed to initialize avatar client: {exc}", flush=True)
        if stores is not None:
            stores.dispose()
        return 2

    try:
        if args.command == "avatar-session":
            session = await client.create_session(
                args.avatar_id or settings.avatar.avatar_id,
                voice_id=args.voice_id or settings.avatar.voice_id or None,
            )
            result = session.to_dict()
        elif args.command == "avatar-interrupt":
            result = await client.interrupt(args.session_id)
        else:
            result = await client.stop(args.session_id)
    except AvatarAPIError as exc:
        print(f"Error: {exc}", flush=True)
        return 1
    finally:
        await client.close()
        stores.dispose()

    print(json.dumps(result, ensure_ascii=False), flush=True)
    return 0


async def _verify_keys(settings: AppSettings, args: argparse.Namespace) -> int:
    try:
        secrets = create_secret_store(settings.secrets, config_path=args.config)
    except Exception as exc:
        print(f"Error: failed to open secret store: {exc}", flush=True)
        return 2

    failures = 0
    for key, verify in key_verifiers(settings):
        value = get_secret(secrets, key=key)
        if not value:
            print(f"{key}: missing", flush=True)
            failures += 1
            continue
        try:
            ok = await verify(value)
        except Exception as exc:
            print(f"{key}: error ({exc})", flush=True)
            failures += 1
            continue
        print(f"{key}: {'ok' if ok else 'rejected'} ({mask_secret(value)})", flush=True)
        if not ok:
            failures += 1
    return 1 if failures else 0


def _load_settings_or_default(path: Path) -> AppSettings:
    if path.exists():
        return load_settings(path)
    return AppSettings()


if __name__ == "__main__":
    raise SystemExit(main())
