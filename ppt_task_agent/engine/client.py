"""
PPT 引擎客户端

基于 httpx.AsyncClient 访问外部 PPT 生成引擎：创建任务、查询任务、提交续写、创建项目、上传文件。
客户端无状态，不做本地缓存；瞬时错误（连接失败、超时、429、5xx）按指数退避 + jitter 重试，
重试耗尽后抛出 EngineUnavailable，引擎拒绝请求时抛出 EngineError。
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Optional

import httpx

from ..config import settings
from ..errors import EngineError, EngineUnavailable
from ..logging_config import get_logger
from .models import (
    DesignSpec,
    EngineSnapshot,
    PromptPayload,
    extract_latest_attachments,
    parse_output_messages,
)
from .prompt import build_design_instruction, build_ppt_prompt

logger = get_logger(__name__)

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


class EngineClient:
    """PPT 引擎 HTTP 客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout_s: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_sleep_s: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        初始化引擎客户端

        Args:
            base_url: 引擎 API 地址，默认从配置读取
            api_key: 引擎 API Key，默认从配置读取
            timeout_s: 单次请求超时
            max_attempts: 瞬时错误的最大尝试次数
            base_sleep_s: 退避基准秒数
            transport: 自定义 httpx transport（测试时注入 MockTransport）
        """
        self.base_url = (base_url or settings.engine_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.engine_api_key
        self.timeout_s = timeout_s if timeout_s is not None else settings.engine_timeout_seconds
        self.max_attempts = max(1, max_attempts or settings.engine_max_retries)
        self.base_sleep_s = (
            base_sleep_s if base_sleep_s is not None else settings.engine_retry_base_sleep_seconds
        )
        self._transport = transport

        if not self.api_key:
            logger.warning("engine_api_key_missing", base_url=self.base_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_s,
            transport=self._transport,
            headers={
                "API_KEY": self.api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    @staticmethod
    def _engine_error(response: httpx.Response) -> EngineError:
        code = f"http_{response.status_code}"
        message = response.text[:300] or response.reason_phrase
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error") if isinstance(body.get("error"), dict) else body
            code = str(error.get("code") or code)
            message = str(error.get("message") or error.get("detail") or message)
        return EngineError(code, message, status_code=response.status_code)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """带重试的 HTTP 请求，返回 JSON 对象。"""
        last_error: Optional[Exception] = None
        last_status: Optional[int] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._client() as client:
                    response = await client.request(method, path, json=json_body)
                if response.status_code in _TRANSIENT_STATUS:
                    last_status = response.status_code
                    last_error = EngineUnavailable(
                        f"{method} {path} -> HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                elif response.status_code >= 400:
                    raise self._engine_error(response)
                else:
                    try:
                        data = response.json()
                    except ValueError:
                        raise EngineError("invalid_response", f"{method} {path} 返回非 JSON 内容")
                    return data if isinstance(data, dict) else {"data": data}
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                last_status = None
            except httpx.HTTPError as e:
                # 解码失败、重定向过多等，重试无意义
                raise EngineUnavailable(
                    f"{method} {path} 失败: {type(e).__name__}: {e}"
                ) from e

            if attempt >= self.max_attempts:
                break
            sleep_s = self.base_sleep_s * (2 ** (attempt - 1))
            total_sleep = sleep_s + random.uniform(0, sleep_s * 0.3)
            logger.warning(
                "engine_retry",
                method=method,
                path=path,
                attempt=attempt,
                max_attempts=self.max_attempts,
                sleep_s=round(total_sleep, 2),
                error=f"{type(last_error).__name__}: {str(last_error)[:120]}",
            )
            await asyncio.sleep(total_sleep)

        raise EngineUnavailable(
            f"{method} {path} 失败: {type(last_error).__name__}: {last_error}",
            status_code=last_status,
        ) from last_error

    # ------------------------------------------------------------------ #
    # Tasks API
    # ------------------------------------------------------------------ #

    async def create_remote_task(self, payload: PromptPayload) -> str:
        """提交生成任务，返回引擎任务 ID。"""
        body: dict[str, Any] = {
            "prompt": build_ppt_prompt(payload),
            "agent_profile": settings.engine_agent_profile,
            "task_mode": settings.engine_task_mode,
            "attachments": [{"fileId": fid} for fid in payload.attachment_file_ids],
            "create_shareable_link": True,
            "interactive_mode": True,
        }
        if payload.engine_project_id:
            body["project_id"] = payload.engine_project_id

        data = await self._request("POST", "/tasks", json_body=body)
        engine_task_id = data.get("task_id") or data.get("id")
        if not engine_task_id:
            raise EngineError("invalid_response", "引擎未返回 task_id")
        logger.info("engine_task_created", engine_task_id=engine_task_id)
        return str(engine_task_id)

    async def get_remote_task(self, engine_task_id: str) -> EngineSnapshot:
        """查询引擎任务，输出统一为规范形态。"""
        data = await self._request("GET", f"/tasks/{engine_task_id}")
        messages = parse_output_messages(data.get("output"))
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        share_url = metadata.get("task_url") or data.get("share_url") or data.get("task_url")
        return EngineSnapshot(
            engine_task_id=str(data.get("id") or engine_task_id),
            status=str(data.get("status") or "").lower(),
            messages=messages,
            attachments=extract_latest_attachments(messages),
            share_url=share_url,
            title=metadata.get("task_title") or data.get("title"),
        )

    async def submit_continuation(self, engine_task_id: str, text: str) -> None:
        """提交用户回复，解除引擎的 ask 状态。"""
        await self._request(
            "POST",
            "/tasks",
            json_body={"prompt": text, "task_id": engine_task_id},
        )
        logger.info("engine_continuation_submitted", engine_task_id=engine_task_id)

    # ------------------------------------------------------------------ #
    # Projects API
    # ------------------------------------------------------------------ #

    async def create_remote_project(self, design_spec: DesignSpec) -> str:
        """创建引擎侧项目，项目级 instruction 为设计规范说明。返回引擎项目 ID。"""
        data = await self._request(
            "POST",
            "/projects",
            json_body={"name": design_spec.name, "instruction": build_design_instruction(design_spec)},
        )
        project_id = data.get("id") or data.get("project_id")
        if not project_id:
            raise EngineError("invalid_response", "引擎未返回项目 ID")
        logger.info("engine_project_created", engine_project_id=project_id)
        return str(project_id)

    # ------------------------------------------------------------------ #
    # Files API
    # ------------------------------------------------------------------ #

    async def upload_file(self, file_name: str, data: bytes, content_type: str) -> str:
        """两步上传：申请 upload_url，再 PUT 文件内容。返回引擎文件 ID。"""
        created = await self._request("POST", "/files", json_body={"filename": file_name})
        file_id = created.get("id") or created.get("file_id")
        upload_url = created.get("upload_url")
        if not file_id or not upload_url:
            raise EngineError("invalid_response", "引擎未返回 file_id / upload_url")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.put(
                    str(upload_url), content=data, headers={"Content-Type": content_type}
                )
        except httpx.HTTPError as e:
            raise EngineUnavailable(f"文件上传失败: {type(e).__name__}: {e}") from e
        if response.status_code >= 500:
            raise EngineUnavailable(f"文件上传失败: HTTP {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            raise self._engine_error(response)
        logger.info("engine_file_uploaded", file_id=file_id, file_name=file_name, size=len(data))
        return str(file_id)


_engine_client: Optional[EngineClient] = None


def get_engine_client() -> EngineClient:
    global _engine_client
    if _engine_client is None:
        _engine_client = EngineClient()
    return _engine_client
