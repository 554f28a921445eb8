from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from loguru import logger

from atmo_chat.errors import ChatCoreError, ReconciliationError
from atmo_chat.store.entities import EntityQueue
from atmo_chat.store.events import EventEmitter, new_id, utc_now
from atmo_chat.store.store import WorkspaceStore, casefold_key

_PRIORITY_ALIASES = {
    "high": "high",
    "highest": "high",
    "urgent": "high",
    "low": "low",
    "lowest": "low",
    "minor": "low",
}

_GOAL_STATUS_ALIASES = {
    "planned": "planned",
    "not started": "planned",
    "todo": "planned",
    "to-do": "planned",
    "complete": "completed",
    "completed": "completed",
    "done": "completed",
    "finished": "completed",
}

# Child tables and the column each one is keyed on.
_CHILD_TABLES = {
    "task": "project_tasks",
    "goal": "project_goals",
    "milestone": "project_milestones",
    "insight": "user_insights",
}


def normalise_priority(value: object) -> str:
    if value is None:
        return "medium"
    return _PRIORITY_ALIASES.get(str(value).strip().lower(), "medium")


def normalise_goal_status(value: object) -> str:
    if value is None:
        return "in-progress"
    return _GOAL_STATUS_ALIASES.get(str(value).strip().lower(), "in-progress")


def _required_text(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' is required")
    return value.strip()


def _optional_text(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)):
        raise ValueError(f"'{key}' must be a string")
    return str(value).strip()


def _iso_date(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be an ISO date string")
    text = value.strip()
    try:
        date.fromisoformat(text)
    except ValueError:
        try:
            datetime.fromisoformat(text)
        except ValueError as ex:
            raise ValueError(f"'{key}' is not an ISO date: {text!r}") from ex
    return text


def _relevance(data: dict) -> int | None:
    value = data.get("relevance")
    if value is None:
        return None
    try:
        relevance = int(value)
    except (TypeError, ValueError) as ex:
        raise ValueError(f"'relevance' must be a number, got {value!r}") from ex
    return min(100, max(1, relevance))


def _tags(data: dict) -> list[str] | None:
    value = data.get("tags")
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
        raise ValueError("'tags' must be a list of strings")
    return [tag.strip() for tag in value if tag.strip()]


def _is_delete(data: dict) -> bool:
    return str(data.get("action", "")).strip().lower() == "delete"


def _due_within(value: object, days: int) -> bool:
    if not value:
        return False
    try:
        due = date.fromisoformat(str(value)[:10])
    except ValueError:
        return False
    return 0 <= (due - datetime.now(UTC).date()).days <= days


@dataclass
class ReconcileOutcome:
    entity_id: str
    entity_type: str
    name: str
    action: str
    record_id: str | None = None

    def to_json(self) -> dict:
        return {
            "entityId": self.entity_id,
            "type": self.entity_type,
            "name": self.name,
            "action": self.action,
            "id": self.record_id,
        }


@dataclass
class ReconcileResult:
    processed: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False
    outcomes: list[ReconcileOutcome] = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "processed": self.processed,
            "total": self.total,
            "dryRun": self.dry_run,
            "errors": list(self.errors),
        }


class EntityReconciler:
    """Turns queued ``claude_parsed_entities`` rows into workspace records.

    Each entity is claimed, upserted in its own transaction, and only then
    marked processed, so a crash in between leaves the row to be retried.
    Upserts match on the case-folded name within the owner's scope (and the
    parent project reference for child records), which makes a repeat of
    the same entity an update rather than a second insert.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        queue: EntityQueue,
        events: EventEmitter,
        *,
        dry_run: bool = False,
        name: str = "reconciler",
    ):
        self._store = store
        self._queue = queue
        self._events = events
        self._dry_run = dry_run
        self._name = name

    def reconcile(
        self,
        batch_size: int = 100,
        *,
        dry_run: bool | None = None,
        entity_ids: list[str] | None = None,
    ) -> ReconcileResult:
        dry_run = self._dry_run if dry_run is None else dry_run
        if dry_run:
            return self._dry_run_batch(batch_size, entity_ids)

        claimer = f"{self._name}:{new_id()}"
        rows = self._queue.claim(claimer, limit=batch_size, entity_ids=entity_ids)
        result = ReconcileResult(total=len(rows), dry_run=False)
        if not rows:
            return result

        logger.info(f"Reconciling {len(rows)} entities ({claimer})")
        for row in rows:
            entity_id = str(row["id"])
            try:
                outcome = self._reconcile_row(row)
            except Exception as ex:
                error = ReconciliationError(entity_id, str(ex))
                logger.warning(f"Reconcile failed: {error}")
                result.errors.append(str(error))
                self._release(entity_id, claimer, str(ex))
                continue

            try:
                marked = self._queue.mark_processed(entity_id, claimer)
            except ChatCoreError as ex:
                # The upsert is committed; a later pass repeats it harmlessly.
                error = ReconciliationError(entity_id, f"could not mark processed: {ex}")
                logger.warning(str(error))
                result.errors.append(str(error))
                continue
            if not marked:
                logger.warning(f"Claim on entity {entity_id} expired before it was marked processed; left to its new claimer")
                outcome.action = "skipped"
                result.outcomes.append(outcome)
                continue

            result.processed += 1
            result.outcomes.append(outcome)

        logger.info(f"Reconciled {result.processed}/{result.total} entities, {len(result.errors)} errors")
        return result

    def _dry_run_batch(self, batch_size: int, entity_ids: list[str] | None) -> ReconcileResult:
        rows = self._queue.peek(limit=batch_size, entity_ids=entity_ids)
        result = ReconcileResult(total=len(rows), dry_run=True)
        for row in rows:
            entity_id = str(row["id"])
            entity_type = str(row["entity_type"])
            try:
                data = self._load_payload(row)
                name = _required_text(data, "title" if entity_type == "insight" else "name")
            except ValueError as ex:
                result.errors.append(str(ReconciliationError(entity_id, str(ex))))
                continue
            logger.info(f"DRY RUN - would upsert {entity_type} {name!r}: {data}")
            result.processed += 1
            result.outcomes.append(ReconcileOutcome(entity_id, entity_type, name, "dry_run"))
        return result

    def _release(self, entity_id: str, claimer: str, error: str) -> None:
        try:
            self._queue.release(entity_id, claimer, error=error)
        except ChatCoreError as ex:
            logger.warning(f"Could not release claim on {entity_id}: {ex}")

    @staticmethod
    def _load_payload(row: sqlite3.Row) -> dict:
        try:
            data = json.loads(row["entity_data"])
        except ValueError as ex:
            raise ValueError(f"payload is not valid JSON: {ex}") from ex
        if not isinstance(data, dict):
            raise ValueError("payload must be an object")
        return data

    def _reconcile_row(self, row: sqlite3.Row) -> ReconcileOutcome:
        entity_id = str(row["id"])
        entity_type = str(row["entity_type"])
        owner_id = str(row["owner_id"])
        data = self._load_payload(row)

        handler = {
            "project": self._upsert_project,
            "task": self._upsert_task,
            "goal": self._upsert_goal,
            "milestone": self._upsert_milestone,
            "knowledge": self._upsert_knowledge,
            "insight": self._upsert_insight,
        }.get(entity_type)
        if handler is None:
            raise ValueError(f"unsupported entity type {entity_type!r}")

        with self._store.transaction():
            name, action, record_id = handler(owner_id, data)
            self._events.emit(
                owner_id,
                "entity.reconciled",
                {"entity_id": entity_id, "entity_type": entity_type, "action": action, "record_id": record_id},
            )
        logger.bind(
            audit=True,
            owner_id=owner_id,
            entity_id=entity_id,
            entity_type=entity_type,
            action=action,
            record_id=record_id,
        ).info(f"{action} {entity_type} {name!r} ({record_id}) from entity {entity_id}")
        return ReconcileOutcome(entity_id, entity_type, name, action, record_id)

    # -- lookups ---------------------------------------------------------

    def resolve_project(self, owner_id: str, project_name: str | None) -> str | None:
        """Oldest live project whose name matches case-insensitively."""
        if not project_name or not project_name.strip():
            return None
        row = self._store.execute(
            """
            SELECT id FROM projects
            WHERE owner_id = ? AND casefold(name) = ? AND status != 'deleted'
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (owner_id, casefold_key(project_name)),
        ).fetchone()
        return str(row["id"]) if row is not None else None

    def _find_project(self, owner_id: str, name: str) -> sqlite3.Row | None:
        return self._store.execute(
            """
            SELECT * FROM projects
            WHERE owner_id = ? AND casefold(name) = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (owner_id, casefold_key(name)),
        ).fetchone()

    def _find_child(self, table: str, name_column: str, owner_id: str, name: str, project_ref: str) -> sqlite3.Row | None:
        return self._store.execute(
            f"""
            SELECT * FROM {table}
            WHERE owner_id = ? AND casefold({name_column}) = ? AND project_ref = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (owner_id, casefold_key(name), project_ref),
        ).fetchone()

    def _update(self, table: str, record_id: str, changes: dict) -> None:
        changes = dict(changes)
        changes["updated_at"] = utc_now()
        assignments = ", ".join(f"{column} = ?" for column in changes)
        self._store.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*changes.values(), record_id),
        )

    def _insert(self, table: str, values: dict) -> str:
        now = utc_now()
        values = {"id": new_id(), **values, "created_at": now, "updated_at": now}
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        self._store.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(values.values()))
        return str(values["id"])

    def _adopt_orphans(self, owner_id: str, name: str) -> None:
        project_id = self.resolve_project(owner_id, name)
        if project_id is None:
            return
        project_ref = casefold_key(name)
        for table in _CHILD_TABLES.values():
            cur = self._store.execute(
                f"""
                UPDATE {table} SET project_id = ?, updated_at = ?
                WHERE owner_id = ? AND project_id IS NULL AND project_ref = ?
                """,
                (project_id, utc_now(), owner_id, project_ref),
            )
            if cur.rowcount:
                logger.info(f"Adopted {cur.rowcount} orphan rows in {table} into project {project_id}")

    # -- per-type upserts -------------------------------------------------

    def _upsert_project(self, owner_id: str, data: dict) -> tuple[str, str, str | None]:
        name = _required_text(data, "name")
        existing = self._find_project(owner_id, name)

        if _is_delete(data):
            if existing is None:
                logger.warning(f"Project not found for deletion: {name!r}")
                return name, "skipped", None
            self._update("projects", existing["id"], {"status": "deleted", "active": 0})
            return name, "deleted", str(existing["id"])

        changes: dict = {}
        description = _optional_text(data, "description")
        if description is not None:
            changes["description"] = description
        if "priority" in data:
            changes["priority"] = normalise_priority(data.get("priority"))
        status = _optional_text(data, "status")

        if existing is not None:
            if status:
                changes["status"] = status.lower()
            elif existing["status"] == "deleted":
                changes["status"] = "active"
            if changes.get("status", existing["status"]) != "deleted":
                changes["active"] = 1
            self._update("projects", existing["id"], changes)
            action, record_id = "updated", str(existing["id"])
        else:
            record_id = self._insert(
                "projects",
                {
                    "owner_id": owner_id,
                    "name": name,
                    "description": changes.get("description", ""),
                    "priority": changes.get("priority", "medium"),
                    "status": (status or "active").lower(),
                    "active": 1,
                },
            )
            action = "created"

        self._adopt_orphans(owner_id, name)
        return name, action, record_id

    def _project_scope(self, owner_id: str, data: dict) -> tuple[str | None, str]:
        """Resolve the parent project of a child payload.

        ``projectId`` must name one of the owner's live projects. Otherwise
        ``project`` (or ``projectName``) is matched by name; an unknown name
        gives no id but keeps its reference so the child can be adopted once
        the project is upserted.
        """
        project_key = _optional_text(data, "projectId")
        if project_key:
            row = self._store.execute(
                "SELECT id, name FROM projects WHERE owner_id = ? AND id = ? AND status != 'deleted'",
                (owner_id, project_key),
            ).fetchone()
            if row is None:
                raise ValueError(f"unknown projectId {project_key!r}")
            return str(row["id"]), casefold_key(row["name"])

        project_name = _optional_text(data, "project") or _optional_text(data, "projectName")
        if not project_name:
            return None, ""
        return self.resolve_project(owner_id, project_name), casefold_key(project_name)

    def _upsert_child(
        self,
        entity_type: str,
        owner_id: str,
        data: dict,
        name: str,
        changes: dict,
        defaults: dict,
        *,
        name_column: str = "name",
        soft_delete: bool = False,
        scope: tuple[str | None, str] | None = None,
    ) -> tuple[str, str, str | None]:
        table = _CHILD_TABLES[entity_type]
        project_id, project_ref = scope if scope is not None else self._project_scope(owner_id, data)
        existing = self._find_child(table, name_column, owner_id, name, project_ref)

        if _is_delete(data):
            if existing is None:
                logger.warning(f"{entity_type.capitalize()} not found for deletion: {name!r}")
                return name, "skipped", None
            if soft_delete:
                self._update(table, existing["id"], {"status": "deleted"})
            else:
                self._store.execute(f"DELETE FROM {table} WHERE id = ?", (existing["id"],))
            return name, "deleted", str(existing["id"])

        if project_ref and project_id is None:
            logger.info(f"{entity_type.capitalize()} {name!r} references unknown project {project_ref!r}; kept as orphan")

        if existing is not None:
            if project_id is not None:
                changes["project_id"] = project_id
            self._update(table, existing["id"], changes)
            return name, "updated", str(existing["id"])

        values = {
            **defaults,
            **changes,
            "owner_id": owner_id,
            "project_id": project_id,
            "project_ref": project_ref,
            name_column: name,
        }
        return name, "created", self._insert(table, values)

    def _upsert_task(self, owner_id: str, data: dict) -> tuple[str, str, str | None]:
        name = _required_text(data, "name")
        changes: dict = {}
        description = _optional_text(data, "description")
        if description is not None:
            changes["description"] = description
        if "priority" in data:
            changes["priority"] = normalise_priority(data.get("priority"))
        due_date = _iso_date(data, "dueDate")
        if due_date is not None:
            changes["due_date"] = due_date

        scope = self._project_scope(owner_id, data)
        defaults = {"description": "", "priority": "medium", "completed": 0}
        if not _is_delete(data):
            project_id, project_ref = scope
            goal_id, goal_ref, named = self._resolve_goal(owner_id, data, project_id, project_ref)
            # A named goal is applied on update too; the fallback goal only seeds new tasks.
            target = changes if named else defaults
            target["goal_id"] = goal_id
            target["goal_ref"] = goal_ref
            defaults["priority"] = self._derived_task_priority(owner_id, project_id, goal_id)

        return self._upsert_child("task", owner_id, data, name, changes, defaults, scope=scope)

    def _resolve_goal(
        self, owner_id: str, data: dict, project_id: str | None, project_ref: str
    ) -> tuple[str | None, str, bool]:
        """Goal a task belongs to, as ``(goal_id, goal_ref, named)``.

        ``goalId`` must exist for the owner. A ``goal`` name is matched
        case-insensitively among the goals of the task's project reference and
        kept as ``goal_ref`` when nothing matches yet. Without either, the
        project's oldest open goal is used.
        """
        goal_key = _optional_text(data, "goalId") or _optional_text(data, "goal_id")
        if goal_key:
            row = self._store.execute(
                "SELECT id, name FROM project_goals WHERE owner_id = ? AND id = ? AND status != 'deleted'",
                (owner_id, goal_key),
            ).fetchone()
            if row is None:
                raise ValueError(f"unknown goalId {goal_key!r}")
            return str(row["id"]), casefold_key(row["name"]), True

        goal_name = _optional_text(data, "goal")
        if goal_name:
            row = self._store.execute(
                """
                SELECT id FROM project_goals
                WHERE owner_id = ? AND casefold(name) = ? AND project_ref = ? AND status != 'deleted'
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
                """,
                (owner_id, casefold_key(goal_name), project_ref),
            ).fetchone()
            if row is None:
                logger.info(f"Task references unknown goal {goal_name!r}; kept for adoption")
                return None, casefold_key(goal_name), True
            return str(row["id"]), casefold_key(goal_name), True

        if project_id is None:
            return None, "", False
        row = self._store.execute(
            """
            SELECT id, name FROM project_goals
            WHERE owner_id = ? AND project_id = ? AND status NOT IN ('deleted', 'completed')
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (owner_id, project_id),
        ).fetchone()
        if row is None:
            return None, "", False
        return str(row["id"]), casefold_key(row["name"]), False

    def _derived_task_priority(self, owner_id: str, project_id: str | None, goal_id: str | None) -> str:
        """High when the goal or an open project milestone is due within three days, or the project is high priority."""
        if project_id is None:
            return "medium"
        if goal_id is not None:
            goal = self._store.execute("SELECT target_date FROM project_goals WHERE id = ?", (goal_id,)).fetchone()
            if goal is not None and _due_within(goal["target_date"], 3):
                return "high"
        milestones = self._store.execute(
            """
            SELECT due_date FROM project_milestones
            WHERE owner_id = ? AND project_id = ? AND status NOT IN ('completed', 'deleted')
            """,
            (owner_id, project_id),
        ).fetchall()
        if any(_due_within(row["due_date"], 3) for row in milestones):
            return "high"
        project = self._store.execute("SELECT priority FROM projects WHERE id = ?", (project_id,)).fetchone()
        if project is not None and project["priority"] == "high":
            return "high"
        return "medium"

    def _adopt_goal_tasks(self, owner_id: str, goal_id: str, name: str, project_ref: str) -> None:
        cur = self._store.execute(
            """
            UPDATE project_tasks SET goal_id = ?, updated_at = ?
            WHERE owner_id = ? AND goal_id IS NULL AND goal_ref = ? AND project_ref = ?
            """,
            (goal_id, utc_now(), owner_id, casefold_key(name), project_ref),
        )
        if cur.rowcount:
            logger.info(f"Adopted {cur.rowcount} tasks into goal {goal_id}")

    def _upsert_goal(self, owner_id: str, data: dict) -> tuple[str, str, str | None]:
        name = _required_text(data, "name")
        changes: dict = {}
        description = _optional_text(data, "description")
        if description is not None:
            changes["description"] = description
        if "priority" in data:
            changes["priority"] = normalise_priority(data.get("priority"))
        if "status" in data:
            changes["status"] = normalise_goal_status(data.get("status"))
        target_date = _iso_date(data, "targetDate")
        if target_date is not None:
            changes["target_date"] = target_date
        scope = self._project_scope(owner_id, data)
        name, action, record_id = self._upsert_child(
            "goal", owner_id, data, name, changes,
            {"description": "", "priority": "medium", "status": "in-progress"},
            soft_delete=True,
            scope=scope,
        )
        if action in ("created", "updated") and record_id is not None:
            self._adopt_goal_tasks(owner_id, record_id, name, scope[1])
        return name, action, record_id

    def _upsert_milestone(self, owner_id: str, data: dict) -> tuple[str, str, str | None]:
        name = _required_text(data, "name")
        changes: dict = {}
        description = _optional_text(data, "description")
        if description is not None:
            changes["description"] = description
        status = _optional_text(data, "status")
        if status:
            changes["status"] = status.lower()
        due_date = _iso_date(data, "dueDate")
        if due_date is not None:
            changes["due_date"] = due_date
        return self._upsert_child(
            "milestone", owner_id, data, name, changes,
            {"description": "", "status": "pending"},
            soft_delete=True,
        )

    def _upsert_insight(self, owner_id: str, data: dict) -> tuple[str, str, str | None]:
        title = _required_text(data, "title")
        changes: dict = {}
        summary = _optional_text(data, "summary")
        if summary is not None:
            changes["summary"] = summary
        category = _optional_text(data, "category")
        if category:
            changes["category"] = category.lower()
        relevance = _relevance(data)
        if relevance is not None:
            changes["relevance"] = relevance
        source_url = _optional_text(data, "source_url")
        if source_url:
            changes["source_url"] = source_url
        insight_kind = _optional_text(data, "type")
        metadata = {"source": "claude_chat"}
        if insight_kind:
            metadata["kind"] = insight_kind.lower()
        return self._upsert_child(
            "insight", owner_id, data, title, changes,
            {
                "summary": "",
                "category": "personal",
                "insight_type": "chat_generated",
                "relevance": 50,
                "metadata_json": json.dumps(metadata, ensure_ascii=True),
            },
            name_column="title",
        )

    def _upsert_knowledge(self, owner_id: str, data: dict) -> tuple[str, str, str | None]:
        name = _required_text(data, "name")
        existing = self._store.execute(
            """
            SELECT id FROM knowledge_items
            WHERE owner_id = ? AND casefold(name) = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (owner_id, casefold_key(name)),
        ).fetchone()

        if _is_delete(data):
            if existing is None:
                return name, "skipped", None
            self._store.execute("DELETE FROM knowledge_items WHERE id = ?", (existing["id"],))
            return name, "deleted", str(existing["id"])

        changes: dict = {}
        content = _optional_text(data, "content")
        if content is not None:
            changes["content"] = content
        kind = _optional_text(data, "type")
        if kind:
            changes["type"] = kind.lower()
        tags = _tags(data)
        if tags is not None:
            changes["tags_json"] = json.dumps(tags, ensure_ascii=True)

        if existing is not None:
            self._update("knowledge_items", existing["id"], changes)
            return name, "updated", str(existing["id"])

        values = {"content": "", "type": "note", "tags_json": "[]", **changes, "owner_id": owner_id, "name": name}
        return name, "created", self._insert("knowledge_items", values)
