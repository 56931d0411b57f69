from __future__ import annotations

"""PPT 任务 SQLite 存储。"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from ..config import settings
from ..engine.models import DesignSpec, ImageAttachment
from ..logging_config import get_logger
from ..tasks.models import ACTIVE_STATUSES, Project, Task, TaskStatus, TimelineEvent

logger = get_logger(__name__)

StatusGuard = Union[TaskStatus, Iterable[TaskStatus], None]

# update_task 允许写入的列；输入字段与 timeline 不在其中
_UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "status",
    "engine_task_id",
    "progress",
    "current_step",
    "output_content",
    "interaction_data",
    "share_url",
    "result_pptx_url",
    "result_pdf_url",
    "error_message",
})

_PROJECT_FIELDS: frozenset[str] = frozenset({
    "name",
    "primary_color",
    "secondary_color",
    "accent_color",
    "font_family",
    "design_notes",
    "logo_url",
    "engine_project_id",
})

STALE_TASK_MESSAGE = "任务超时（超过 {hours} 小时未完成，已自动清理）"


def _now_iso() -> str:
    return datetime.now().isoformat()


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _from_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _status_values(guard: StatusGuard) -> Optional[set[str]]:
    if guard is None:
        return None
    if isinstance(guard, TaskStatus):
        return {guard.value}
    return {TaskStatus(s).value for s in guard}


class TaskStore:
    """任务存储（SQLite）。"""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path).resolve() if db_path is not None else settings.task_db_file
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=5.0
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """单个事务；immediate=True 时先拿写锁，读-改-写在锁内完成。"""
        conn = self._connect()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS ppt_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL,
                    project_id INTEGER,
                    engine_project_id TEXT,
                    design_spec_json TEXT,
                    source_file_id TEXT,
                    source_file_name TEXT,
                    source_file_url TEXT,
                    source_text TEXT,
                    proposal_content TEXT,
                    image_attachments_json TEXT,
                    engine_task_id TEXT,
                    progress INTEGER NOT NULL DEFAULT 0,
                    current_step TEXT,
                    output_content TEXT,
                    interaction_data TEXT,
                    share_url TEXT,
                    result_pptx_url TEXT,
                    result_pdf_url TEXT,
                    error_message TEXT,
                    timeline_json TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_ppt_tasks_user_id
                ON ppt_tasks(user_id);

                CREATE INDEX IF NOT EXISTS idx_ppt_tasks_status
                ON ppt_tasks(status);

                CREATE TABLE IF NOT EXISTS uploaded_files (
                    id TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    file_name TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    storage_key TEXT NOT NULL,
                    url TEXT NOT NULL,
                    engine_file_id TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    primary_color TEXT NOT NULL,
                    secondary_color TEXT NOT NULL,
                    accent_color TEXT NOT NULL,
                    font_family TEXT NOT NULL,
                    design_notes TEXT,
                    logo_url TEXT,
                    engine_project_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_projects_user_id
                ON projects(user_id);
                """
            )

    # ------------------------------------------------------------------ #
    # 任务
    # ------------------------------------------------------------------ #

    def create_task(
        self,
        user_id: int,
        title: str,
        *,
        project_id: Optional[int] = None,
        engine_project_id: Optional[str] = None,
        design_spec: Optional[DesignSpec] = None,
        source_file_id: Optional[str] = None,
        source_file_name: Optional[str] = None,
        source_file_url: Optional[str] = None,
        source_text: Optional[str] = None,
        proposal_content: Optional[str] = None,
        image_attachments: Optional[list[ImageAttachment]] = None,
        current_step: str = "正在初始化...",
    ) -> Task:
        now = _now_iso()
        timeline = [TimelineEvent(time=now, event="任务已创建", status="completed").to_dict()]
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ppt_tasks (
                    user_id, title, status, project_id, engine_project_id, design_spec_json,
                    source_file_id, source_file_name, source_file_url, source_text,
                    proposal_content, image_attachments_json, progress, current_step,
                    timeline_json, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    title,
                    TaskStatus.PENDING.value,
                    project_id,
                    engine_project_id,
                    _to_json(design_spec.to_dict()) if design_spec else None,
                    source_file_id,
                    source_file_name,
                    source_file_url,
                    source_text,
                    proposal_content,
                    _to_json([img.to_dict() for img in image_attachments or []]),
                    0,
                    current_step,
                    _to_json(timeline),
                    0,
                    now,
                    now,
                ),
            )
            task_id = int(cursor.lastrowid)
            row = conn.execute("SELECT * FROM ppt_tasks WHERE id = ?", (task_id,)).fetchone()
        logger.info("task_created", task_id=task_id, user_id=user_id)
        return self._row_to_task(row)

    def get_task(self, task_id: int, user_id: Optional[int] = None) -> Optional[Task]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM ppt_tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        if user_id is not None and int(row["user_id"]) != int(user_id):
            return None
        return self._row_to_task(row)

    def list_tasks(self, user_id: int, limit: int = 50) -> list[Task]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM ppt_tasks WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, max(1, int(limit))),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(
        self,
        task_id: int,
        fields: dict[str, Any],
        *,
        expected_status: StatusGuard = None,
        expected_version: Optional[int] = None,
        timeline_event: Optional[tuple[str, str]] = None,
    ) -> Optional[Task]:
        """
        原子的字段级更新。

        在同一个 IMMEDIATE 事务中校验 expected_status / expected_version，
        写入字段、追加时间线事件并递增 version。校验不通过或任务不存在时返回 None。
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"不可更新的字段: {sorted(unknown)}")

        allowed_statuses = _status_values(expected_status)
        values = dict(fields)
        if isinstance(values.get("status"), TaskStatus):
            values["status"] = values["status"].value

        with self._transaction(immediate=True) as conn:
            row = conn.execute("SELECT * FROM ppt_tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                return None
            if allowed_statuses is not None and row["status"] not in allowed_statuses:
                return None
            if expected_version is not None and int(row["version"]) != int(expected_version):
                return None
            if values.get("engine_task_id") and row["engine_task_id"]:
                raise ValueError(f"任务 {task_id} 已关联引擎任务 {row['engine_task_id']}")

            now = _now_iso()
            if timeline_event is not None:
                timeline = _from_json(row["timeline_json"], [])
                event, status = timeline_event
                timeline.append(TimelineEvent(time=now, event=event, status=status).to_dict())
                values["timeline_json"] = _to_json(timeline)

            assignments = ", ".join(f"{column} = ?" for column in values)
            if assignments:
                assignments += ", "
            conn.execute(
                f"UPDATE ppt_tasks SET {assignments}version = version + 1, updated_at = ? WHERE id = ?",
                (*values.values(), now, task_id),
            )
            row = conn.execute("SELECT * FROM ppt_tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row)

    def append_timeline_event(self, task_id: int, event: str, status: str) -> Optional[Task]:
        return self.update_task(task_id, {}, timeline_event=(event, status))

    def fail_stale_tasks(self, hours: Optional[int] = None) -> int:
        """将超过 N 小时未更新的未结束任务标记为 failed。"""
        hours = int(hours if hours is not None else settings.stale_task_hours)
        cutoff = (datetime.now() - timedelta(hours=hours)).isoformat()
        statuses = sorted(s.value for s in ACTIVE_STATUSES)
        placeholders = ",".join("?" * len(statuses))
        with self._transaction(immediate=True) as conn:
            rows = conn.execute(
                f"SELECT id, timeline_json FROM ppt_tasks WHERE status IN ({placeholders}) AND updated_at < ?",
                (*statuses, cutoff),
            ).fetchall()
            now = _now_iso()
            for row in rows:
                timeline = _from_json(row["timeline_json"], [])
                timeline.append(
                    TimelineEvent(time=now, event="任务自动清理（超时）", status="failed").to_dict()
                )
                conn.execute(
                    """
                    UPDATE ppt_tasks
                    SET status = ?, current_step = ?, error_message = ?, interaction_data = NULL,
                        timeline_json = ?, version = version + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        TaskStatus.FAILED.value,
                        "生成失败",
                        STALE_TASK_MESSAGE.format(hours=hours),
                        _to_json(timeline),
                        now,
                        row["id"],
                    ),
                )
        if rows:
            logger.warning("stale_tasks_failed", count=len(rows), cutoff=cutoff)
        return len(rows)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        design_spec = _from_json(row["design_spec_json"], None)
        return Task(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=row["title"],
            status=TaskStatus(row["status"]),
            project_id=row["project_id"],
            engine_project_id=row["engine_project_id"],
            design_spec=DesignSpec.from_dict(design_spec) if isinstance(design_spec, dict) else None,
            source_file_id=row["source_file_id"],
            source_file_name=row["source_file_name"],
            source_file_url=row["source_file_url"],
            source_text=row["source_text"],
            proposal_content=row["proposal_content"],
            image_attachments=[
                ImageAttachment.from_dict(item)
                for item in _from_json(row["image_attachments_json"], [])
                if isinstance(item, dict)
            ],
            engine_task_id=row["engine_task_id"],
            progress=int(row["progress"] or 0),
            current_step=row["current_step"],
            output_content=row["output_content"],
            interaction_data=row["interaction_data"],
            share_url=row["share_url"],
            result_pptx_url=row["result_pptx_url"],
            result_pdf_url=row["result_pdf_url"],
            error_message=row["error_message"],
            timeline_events=[
                TimelineEvent.from_dict(item)
                for item in _from_json(row["timeline_json"], [])
                if isinstance(item, dict)
            ],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=int(row["version"]),
        )

    # ------------------------------------------------------------------ #
    # 上传文件元数据
    # ------------------------------------------------------------------ #

    def save_uploaded_file(
        self,
        file_id: str,
        user_id: int,
        file_name: str,
        content_type: str,
        size: int,
        storage_key: str,
        url: str,
        engine_file_id: Optional[str] = None,
    ) -> dict[str, Any]:
        record = {
            "id": file_id,
            "user_id": user_id,
            "file_name": file_name,
            "content_type": content_type,
            "size": int(size),
            "storage_key": storage_key,
            "url": url,
            "engine_file_id": engine_file_id,
            "created_at": _now_iso(),
        }
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO uploaded_files (
                    id, user_id, file_name, content_type, size, storage_key, url, engine_file_id, created_at
                ) VALUES (:id, :user_id, :file_name, :content_type, :size, :storage_key, :url, :engine_file_id, :created_at)
                """,
                record,
            )
        return record

    def get_uploaded_file(self, file_id: str, user_id: Optional[int] = None) -> Optional[dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM uploaded_files WHERE id = ?", (file_id,)).fetchone()
        if row is None:
            return None
        if user_id is not None and int(row["user_id"]) != int(user_id):
            return None
        return dict(row)

    # ------------------------------------------------------------------ #
    # 项目
    # ------------------------------------------------------------------ #

    def create_project(self, user_id: int, name: str, **fields: Any) -> Project:
        unknown = set(fields) - _PROJECT_FIELDS
        if unknown:
            raise ValueError(f"未知的项目字段: {sorted(unknown)}")
        defaults = Project(id=0, user_id=user_id, name=name)
        now = _now_iso()
        record = {
            "user_id": user_id,
            "name": name,
            "primary_color": fields.get("primary_color") or defaults.primary_color,
            "secondary_color": fields.get("secondary_color") or defaults.secondary_color,
            "accent_color": fields.get("accent_color") or defaults.accent_color,
            "font_family": fields.get("font_family") or defaults.font_family,
            "design_notes": fields.get("design_notes"),
            "logo_url": fields.get("logo_url"),
            "engine_project_id": fields.get("engine_project_id"),
            "created_at": now,
            "updated_at": now,
        }
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO projects (
                    user_id, name, primary_color, secondary_color, accent_color, font_family,
                    design_notes, logo_url, engine_project_id, created_at, updated_at
                ) VALUES (
                    :user_id, :name, :primary_color, :secondary_color, :accent_color, :font_family,
                    :design_notes, :logo_url, :engine_project_id, :created_at, :updated_at
                )
                """,
                record,
            )
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (cursor.lastrowid,)).fetchone()
        logger.info("project_created", project_id=row["id"], user_id=user_id)
        return Project(**dict(row))

    def get_project(self, project_id: int, user_id: Optional[int] = None) -> Optional[Project]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            return None
        if user_id is not None and int(row["user_id"]) != int(user_id):
            return None
        return Project(**dict(row))

    def list_projects(self, user_id: int) -> list[Project]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [Project(**dict(row)) for row in rows]

    def update_project(self, project_id: int, fields: dict[str, Any]) -> Optional[Project]:
        unknown = set(fields) - _PROJECT_FIELDS
        if unknown:
            raise ValueError(f"不可更新的项目字段: {sorted(unknown)}")
        values = dict(fields)
        values["updated_at"] = _now_iso()
        assignments = ", ".join(f"{column} = ?" for column in values)
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                f"UPDATE projects SET {assignments} WHERE id = ?",
                (*values.values(), project_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return Project(**dict(row))

    def delete_project(self, project_id: int) -> bool:
        """删除项目；已创建任务保留各自的设计规范快照。"""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return cursor.rowcount > 0


_task_store: Optional[TaskStore] = None


def get_task_store() -> TaskStore:
    global _task_store
    if _task_store is None:
        _task_store = TaskStore()
    return _task_store
