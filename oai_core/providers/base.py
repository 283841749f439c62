"""Provider 抽象接口。

指令分发层不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- chat(req): 发送系统提示词 + 带角色的历史消息，返回一条助手回复。
- list_models(): 列出接口可用的模型 ID。
"""

from typing import List, Protocol
from oai_core.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    name: str

    def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def list_models(self) -> List[str]:
        ...
