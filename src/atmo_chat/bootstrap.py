from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from atmo_chat.app_config import AppConfig, RuntimeEnv
from atmo_chat.auth import Authenticator
from atmo_chat.extractor import EntityExtractor, LlmEntityExtractor
from atmo_chat.gateway import MessageGateway
from atmo_chat.logging_config import setup_logging
from atmo_chat.provider import create_provider
from atmo_chat.reconciler import EntityReconciler
from atmo_chat.store import EntityQueue, EventEmitter, SessionLifecycleManager, WorkspaceStore
from atmo_chat.sweeper import ReconcileSweeper


@dataclass
class AppRuntime:
    config: AppConfig
    store: WorkspaceStore
    events: EventEmitter
    sessions: SessionLifecycleManager
    queue: EntityQueue
    authenticator: Authenticator
    reconciler: EntityReconciler
    gateway: MessageGateway
    sweeper: ReconcileSweeper
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.sweeper.close()
        self.store.close()


def resolve_db_path(path: str) -> str:
    if path == ":memory:":
        return path
    db_path = Path(path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return str(db_path)


def build_runtime(
    app: AppConfig,
    extractor: EntityExtractor,
    *,
    log_descriptions: list[str] | None = None,
) -> AppRuntime:
    """Wire the server-side components around one store."""
    store = WorkspaceStore(resolve_db_path(app.database_path))
    events = EventEmitter(store)
    sessions = SessionLifecycleManager(store, events)
    queue = EntityQueue(store, lease_seconds=app.claim_lease_seconds)
    authenticator = Authenticator(store)
    reconciler = EntityReconciler(store, queue, events, dry_run=app.reconcile_dry_run)
    gateway = MessageGateway(
        store,
        authenticator,
        sessions,
        queue,
        extractor,
        reconciler,
        enabled=app.chat_enabled,
        extractor_timeout_seconds=app.extractor_timeout_seconds,
        history_limit=app.history_limit,
        reconcile_on_submit=app.reconcile_on_submit,
    )
    sweeper = ReconcileSweeper(
        reconciler,
        interval_seconds=app.sweep_interval_seconds,
        batch_size=app.reconcile_batch_size,
    )
    return AppRuntime(
        config=app,
        store=store,
        events=events,
        sessions=sessions,
        queue=queue,
        authenticator=authenticator,
        reconciler=reconciler,
        gateway=gateway,
        sweeper=sweeper,
        log_descriptions=log_descriptions or [],
    )


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    extractor = LlmEntityExtractor(
        create_provider(app.provider_name, env.provider_api_key),
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
    )
    runtime = build_runtime(app, extractor, log_descriptions=log_descriptions)
    await runtime.sweeper.start()
    return runtime
