"""
配置管理模块

使用 Pydantic Settings 从 .env 文件读取配置，包含 PPT 引擎、轮询、进度估算与存储参数。
"""

from pathlib import Path
from functools import lru_cache
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PACKAGE_DIR = Path(__file__).resolve().parent
BACKEND_DIR = PACKAGE_DIR.parent


class Settings(BaseSettings):
    """应用配置类"""

    # PPT 引擎配置
    engine_api_url: str = "https://api.manus.im/v1"
    engine_api_key: str = ""
    engine_timeout_seconds: float = 60.0
    engine_agent_profile: str = "manus-1.6-max"
    engine_task_mode: str = "agent"
    engine_max_retries: int = 3
    engine_retry_base_sleep_seconds: float = 1.0

    # 轮询
    poll_interval_seconds: float = 2.0
    poll_error_log_every: int = 5

    # 进度估算（可调常量）
    progress_start: int = 50
    progress_baseline: int = 60
    progress_growth_factor: float = 3.0
    progress_ceiling: int = 95
    current_step_max_length: int = 100

    # 输出过滤
    filter_min_meaningful_length: int = 50
    filter_action_max_length: int = 100

    # 存储
    data_dir: str = str(BACKEND_DIR / "data")
    task_db_path: str = ""
    file_storage_dir: str = ""
    file_public_base_url: str = "/files"
    max_upload_size_mb: int = 50
    result_download_timeout_seconds: float = 60.0
    result_download_max_retries: int = 3

    # 超时任务清理
    stale_task_hours: int = 24

    # 服务器配置
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # 前端配置
    frontend_url: str = "http://localhost:3000"

    # 认证（空值 = 跳过认证，方便开发）
    api_secret_key: str = ""
    default_user_id: int = 1

    # 速率限制（slowapi 格式）
    rate_limit_create: str = "10/minute"
    rate_limit_query: str = "120/minute"

    # 日志
    log_level: str = "INFO"
    log_format: str = "auto"  # "auto" | "json" | "console"

    model_config = SettingsConfigDict(
        env_file=str(BACKEND_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator("progress_ceiling")
    def clamp_progress_ceiling(cls, v: int) -> int:
        # 100 只留给 completed
        return max(0, min(int(v), 99))

    def validate_startup(self) -> list[str]:
        """启动时校验关键配置，返回警告列表。"""
        warnings: list[str] = []
        if not self.engine_api_key:
            warnings.append("ENGINE_API_KEY 未设置，生成任务将无法提交")
        if self.progress_baseline > self.progress_ceiling:
            warnings.append(
                f"PROGRESS_BASELINE({self.progress_baseline}) 大于 PROGRESS_CEILING({self.progress_ceiling})"
            )
        storage = self.file_storage_path
        storage.mkdir(parents=True, exist_ok=True)
        if not storage.exists():
            warnings.append(f"FILE_STORAGE_DIR 无法创建: {storage}")
        return warnings

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).resolve()

    @property
    def task_db_file(self) -> Path:
        """任务数据库文件路径"""
        if self.task_db_path:
            return Path(self.task_db_path).resolve()
        return self.data_path / "ppt_tasks.db"

    @property
    def file_storage_path(self) -> Path:
        """本地文件存储目录"""
        if self.file_storage_dir:
            return Path(self.file_storage_dir).resolve()
        return self.data_path / "files"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例（带缓存）"""
    return Settings()


# 导出全局配置实例
settings = get_settings()
