from __future__ import annotations

"""项目（设计规范）管理。"""

from typing import Any, Optional, Protocol

from ..engine.client import get_engine_client
from ..engine.models import DesignSpec
from ..errors import AppError, EngineError, ErrorCode
from ..logging_config import get_logger
from ..session import SessionContext
from ..storage.task_store import TaskStore, get_task_store
from .models import Project

logger = get_logger(__name__)


class ProjectEngineGateway(Protocol):
    async def create_remote_project(self, design_spec: DesignSpec) -> str: ...


class ProjectService:
    """项目 CRUD。创建时同步建立引擎侧项目，失败不阻塞本地创建。"""

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        engine: Optional[ProjectEngineGateway] = None,
    ):
        self.store = store or get_task_store()
        self.engine = engine or get_engine_client()

    def list_projects(self, session: SessionContext) -> list[Project]:
        return self.store.list_projects(session.user_id)

    def get_project(self, project_id: int, session: SessionContext) -> Project:
        project = self.store.get_project(project_id, user_id=session.user_id)
        if project is None:
            raise AppError(ErrorCode.PROJECT_NOT_FOUND, f"项目不存在: {project_id}")
        return project

    async def create_project(self, session: SessionContext, name: str, fields: dict[str, Any]) -> Project:
        draft = Project(id=0, user_id=session.user_id, name=name, **fields)
        engine_project_id: Optional[str] = None
        try:
            engine_project_id = await self.engine.create_remote_project(draft.to_design_spec())
        except EngineError as e:
            # 引擎侧项目可缺省，任务创建时不带 project_id
            logger.warning("engine_project_create_failed", code=e.code, error=e.message)
        return self.store.create_project(
            session.user_id,
            name,
            engine_project_id=engine_project_id,
            **fields,
        )

    def update_project(self, project_id: int, session: SessionContext, fields: dict[str, Any]) -> Project:
        self.get_project(project_id, session)
        if not fields:
            return self.get_project(project_id, session)
        updated = self.store.update_project(project_id, fields)
        if updated is None:
            raise AppError(ErrorCode.PROJECT_NOT_FOUND, f"项目不存在: {project_id}")
        logger.info("project_updated", project_id=project_id, fields=sorted(fields))
        return updated

    def delete_project(self, project_id: int, session: SessionContext) -> None:
        self.get_project(project_id, session)
        self.store.delete_project(project_id)
        logger.info("project_deleted", project_id=project_id)


_project_service: Optional[ProjectService] = None


def get_project_service() -> ProjectService:
    global _project_service
    if _project_service is None:
        _project_service = ProjectService()
    return _project_service
