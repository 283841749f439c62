"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("OAI_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """插件运行配置。"""

    # ---- 存储与日志 ----
    data_dir: str = Field(default=".storage", description="智能体注册表与导出文件所在目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- Provider 相关配置 ----
    api_base: str = Field(default="", description="首次启动时写入注册表的 API 地址")
    api_key: str = Field(default="", description="首次启动时写入注册表的 API 密钥")
    http_timeout: float = Field(default=30.0, ge=1.0, description="普通 HTTP 请求超时（秒）")
    chat_timeout: float = Field(
        default=300.0,
        ge=1.0,
        description="单次生成的最长等待时间（秒），超时后释放生成状态",
    )
    default_model: str = Field(default="gpt-4o", description="新建智能体的默认模型")
    default_prompt: str = Field(
        default="You are a helpful assistant.",
        description="新建智能体未指定提示词时使用的系统提示词",
    )
    listed_model_keywords: List[str] = Field(
        default_factory=lambda: [
            "gpt-5",
            "claude",
            "gemini-3",
            "deepseek",
            "kimi",
            "grok-4",
            "banana",
            "sora-2",
        ],
        description="模型列表过滤关键字，同时决定分组顺序",
    )
    describe_interval: float = Field(
        default=0.1,
        ge=0.0,
        description="批量生成描述时每次调用之间的停顿（秒）",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
