"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护模型列表的过滤与引用解析 (registry)。
- 提供 OpenAI 兼容接口的具体实现 (openai_client)。
"""

from typing import Callable

from oai_core.providers.base import ProviderClient
from oai_core.providers.openai_client import OpenAICompatClient


ProviderFactory = Callable[[str, str], ProviderClient]


def create_provider(api_base: str, api_key: str) -> ProviderClient:
    """根据注册表中的 API 配置创建 Provider 实例。"""

    return OpenAICompatClient(api_base, api_key)
