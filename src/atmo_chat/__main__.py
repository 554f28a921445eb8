import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from atmo_chat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from atmo_chat.bootstrap import bootstrap_runtime, build_runtime, resolve_db_path
from atmo_chat.client.cache import ClientSessionCache, FileCacheStorage
from atmo_chat.client.session_api import LocalSessionApi
from atmo_chat.extractor import LlmEntityExtractor
from atmo_chat.logging_config import setup_logging
from atmo_chat.provider import create_provider
from atmo_chat.reconciler import EntityReconciler
from atmo_chat.shell import ChatShell
from atmo_chat.store import EntityQueue, EventEmitter, WorkspaceStore


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="atmo_chat")
    sub = parser.add_subparsers(dest="command")
    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    sub.add_parser("reconcile", help="run one reconcile pass and exit")
    return parser.parse_args(argv)


async def repl() -> None:
    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env)
    token = runtime.authenticator.issue_token(app.owner_id, ttl_seconds=24 * 3600)
    cache = ClientSessionCache(
        LocalSessionApi(runtime.sessions, app.owner_id),
        FileCacheStorage(str(Path(app.cache_directory))),
        app.owner_id,
    )
    shell = ChatShell(
        cache,
        runtime.gateway,
        runtime.reconciler,
        runtime.queue,
        token=token,
        owner_id=app.owner_id,
    )

    await cache.initialize()

    print("atmo-chat (type 'exit' to quit, '/help' for commands)")
    print(f"Owner: {app.owner_id}")
    print(f"Model: {app.provider_name}/{app.model}")
    if not app.chat_enabled:
        print("Chat: disabled (ATMO_ENABLE_CHAT)")
    if app.reconcile_dry_run:
        print("Reconcile: dry run")
    if cache.active_session is not None:
        print(f"Active session: {cache.active_session.id} ({cache.active_session.message_count} messages)")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                await shell.handle(trimmed)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        runtime.authenticator.revoke_token(token)
        await runtime.close()


def serve(host: str, port: int) -> None:
    import uvicorn

    from atmo_chat.api import create_app

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)
    extractor = LlmEntityExtractor(
        create_provider(app.provider_name, env.provider_api_key),
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
    )
    runtime = build_runtime(app, extractor, log_descriptions=log_descriptions)
    try:
        uvicorn.run(create_app(runtime), host=host, port=port, log_level=app.log_level.lower())
    finally:
        runtime.store.close()


def reconcile_once() -> None:
    app = parse_app_config(load_json_config())
    setup_logging(level=app.log_level, consumers=app.log_consumers)
    store = WorkspaceStore(resolve_db_path(app.database_path))
    try:
        reconciler = EntityReconciler(
            store,
            EntityQueue(store, lease_seconds=app.claim_lease_seconds),
            EventEmitter(store),
            dry_run=app.reconcile_dry_run,
        )
        print(json.dumps(reconciler.reconcile(app.reconcile_batch_size).to_json()))
    finally:
        store.close()


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    if args.command == "serve":
        serve(args.host, args.port)
    elif args.command == "reconcile":
        reconcile_once()
    else:
        asyncio.run(repl())


if __name__ == "__main__":
    main()
