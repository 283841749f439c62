"""智能体（Persona）与注册表的领域模型。

- Persona: 一个具名配置（模型 + 系统提示词），拥有一条公有历史
  和按用户划分的私有历史，以及用于丢弃过期生成结果的版本计数。
- RegistryData: 进程内唯一的注册表快照，序列化后整体落盘。

对用户暴露的历史索引一律从 1 开始，±1 换算只发生在本模块的方法边界上。
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import ValidationError
from .models import ChatMessage


NAME_MAX_CHARS = 7
MODEL_MAX_CHARS = 50
# 名称中不允许出现的指令符号（空白字符另行检查）
RESERVED_SYMBOLS = "&\"#~/-_'!@$%:*"
DEFAULT_DESCRIPTION = "新建智能体"


def is_valid_name(name: str) -> bool:
    if not name or len(name) > NAME_MAX_CHARS:
        return False
    return not any(c in RESERVED_SYMBOLS or c.isspace() for c in name)


def validate_name(name: str, existing: Iterable[str] = ()) -> str:
    """校验新名称（创建/复制/重命名时调用），返回原样名称。

    已存在的数据不会被回溯校验。
    """

    if not name:
        raise ValidationError(code="NAME_EMPTY", message="请指定名称")
    if not is_valid_name(name):
        raise ValidationError(
            code="NAME_INVALID",
            message=f"名称限制：最多{NAME_MAX_CHARS}字且不能包含指令符号",
        )
    lowered = name.lower()
    if any(e.lower() == lowered for e in existing):
        raise ValidationError(code="NAME_TAKEN", message=f"{name} 已存在")
    return name


@dataclass
class Persona:
    name: str
    model: str
    system_prompt: str
    description: str = ""
    public_history: List[ChatMessage] = field(default_factory=list)
    private_histories: Dict[str, List[ChatMessage]] = field(default_factory=dict)
    generation_id: int = 0
    created_at: int = field(default_factory=lambda: int(time.time()))

    # ---- 历史读写 ----

    def history(self, private: bool, uid: str) -> List[ChatMessage]:
        """只读视图：私有历史不存在时返回空列表，不会创建。"""
        if private:
            return self.private_histories.get(uid, [])
        return self.public_history

    def history_mut(self, private: bool, uid: str) -> List[ChatMessage]:
        if private:
            return self.private_histories.setdefault(uid, [])
        return self.public_history

    def replace_history(self, private: bool, uid: str, messages: List[ChatMessage]) -> None:
        if private:
            self.private_histories[uid] = list(messages)
        else:
            self.public_history = list(messages)

    def clear_history(self, private: bool, uid: str) -> None:
        if private:
            hist = self.private_histories.get(uid)
            if hist is not None:
                hist.clear()
        else:
            self.public_history.clear()

    def delete_at(self, private: bool, uid: str, indices: Iterable[int]) -> List[int]:
        """按 1 起始的位置删除多条记录，返回实际删除的位置（升序）。

        从大到小删除，前面的删除不会让后面的位置失效；越界和重复位置被忽略。
        """
        hist = self.history_mut(private, uid)
        deleted: List[int] = []
        for i in sorted(set(indices), reverse=True):
            if 0 < i <= len(hist):
                del hist[i - 1]
                deleted.append(i)
        deleted.reverse()
        return deleted

    def edit_at(self, private: bool, uid: str, idx: int, content: str) -> bool:
        hist = self.history(private, uid)
        if 0 < idx <= len(hist):
            hist[idx - 1].content = content
            return True
        return False

    def bump_version(self) -> int:
        self.generation_id += 1
        return self.generation_id

    # ---- 序列化 ----

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "model": self.model,
            "system_prompt": self.system_prompt,
            "public_history": [m.to_dict() for m in self.public_history],
            "private_histories": {
                uid: [m.to_dict() for m in msgs] for uid, msgs in self.private_histories.items()
            },
            "generation_id": self.generation_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Persona":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            model=data.get("model") or "",
            system_prompt=data.get("system_prompt") or "",
            public_history=[ChatMessage.from_dict(m) for m in data.get("public_history") or []],
            private_histories={
                str(uid): [ChatMessage.from_dict(m) for m in msgs]
                for uid, msgs in (data.get("private_histories") or {}).items()
            },
            generation_id=int(data.get("generation_id") or 0),
            created_at=int(data.get("created_at") or 0),
        )


@dataclass
class RegistryData:
    """注册表快照：API 配置、可用模型与全部智能体。"""

    api_base: str = ""
    api_key: str = ""
    models: List[str] = field(default_factory=list)
    agents: List[Persona] = field(default_factory=list)
    default_model: str = ""
    default_prompt: str = ""

    def find(self, name: str) -> Optional[Persona]:
        lowered = name.lower()
        for a in self.agents:
            if a.name.lower() == lowered:
                return a
        return None

    def index_of(self, name: str) -> Optional[int]:
        lowered = name.lower()
        for i, a in enumerate(self.agents):
            if a.name.lower() == lowered:
                return i
        return None

    def names(self) -> List[str]:
        return [a.name for a in self.agents]

    @property
    def api_ready(self) -> bool:
        return bool(self.api_base and self.api_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "api_base": self.api_base,
            "api_key": self.api_key,
            "models": list(self.models),
            "agents": [a.to_dict() for a in self.agents],
            "default_model": self.default_model,
            "default_prompt": self.default_prompt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryData":
        return cls(
            api_base=data.get("api_base") or "",
            api_key=data.get("api_key") or "",
            models=list(data.get("models") or []),
            agents=[Persona.from_dict(a) for a in data.get("agents") or []],
            default_model=data.get("default_model") or "",
            default_prompt=data.get("default_prompt") or "",
        )
