"""统一的对话与结果数据模型。

本模块定义了插件内部在存储与 Provider 之间共享的标准数据结构：

- ChatMessage: 一条历史消息（user/assistant/system），带附带的图片引用。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult: 从 Provider 解析后的统一响应结果。

Provider 适配器只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换。
"""

import time
from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List


# 消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息，既用于历史存储，也用于构造请求。

    - role: 消息角色。
    - content: 纯文本内容（可能包含 markdown 图片）。
    - images: 附带的图片/视频地址，按发送顺序保存。
    - timestamp: 创建时间（unix 秒）。
    """

    role: Role
    content: str
    images: List[str] = field(default_factory=list)
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "images": list(self.images),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role=data.get("role") or "user",
            content=data.get("content") or "",
            images=list(data.get("images") or []),
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    system_prompt 为空时不发送 system 消息。
    """

    model: str
    messages: List[ChatMessage]
    system_prompt: str = ""


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前只使用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次对话调用的最终结果。"""

    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def content(self) -> Optional[str]:
        if not self.choices:
            return None
        return self.choices[0].message.content
