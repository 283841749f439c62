"""指令的结构化表示。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Scope(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"

    @property
    def is_private(self) -> bool:
        return self is Scope.PRIVATE

    @property
    def label(self) -> str:
        return "私有" if self is Scope.PRIVATE else "公有"


class ActionKind(str, Enum):
    CHAT = "chat"
    REGENERATE = "regenerate"
    STOP = "stop"
    COPY = "copy"
    RENAME = "rename"
    SET_DESC = "set_desc"
    DELETE = "delete"
    LIST = "list"
    SET_MODEL = "set_model"
    SET_PROMPT = "set_prompt"
    VIEW_PROMPT = "view_prompt"
    LIST_MODELS = "list_models"
    VIEW_ALL = "view_all"
    VIEW_AT = "view_at"
    EXPORT = "export"
    EDIT_AT = "edit_at"
    DELETE_AT = "delete_at"
    CLEAR_HISTORY = "clear_history"
    CLEAR_ALL_PUBLIC = "clear_all_public"
    CLEAR_EVERYTHING = "clear_everything"
    HELP = "help"
    AUTO_FILL_DESCRIPTIONS = "auto_fill_descriptions"


# 需要携带 Scope 的操作
SCOPED_KINDS = frozenset(
    {
        ActionKind.VIEW_ALL,
        ActionKind.VIEW_AT,
        ActionKind.EXPORT,
        ActionKind.EDIT_AT,
        ActionKind.DELETE_AT,
        ActionKind.CLEAR_HISTORY,
    }
)


@dataclass(frozen=True)
class Action:
    """操作符的封闭联合：kind 决定其余字段是否有意义。

    - scope: 仅历史类操作（SCOPED_KINDS）携带。
    - model: 仅 AUTO_FILL_DESCRIPTIONS 携带，为空表示使用默认模型。
    """

    kind: ActionKind
    scope: Optional[Scope] = None
    model: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.kind in SCOPED_KINDS) != (self.scope is not None):
            raise ValueError(f"scope mismatch for {self.kind.value}")
        if self.model is not None and self.kind is not ActionKind.AUTO_FILL_DESCRIPTIONS:
            raise ValueError(f"{self.kind.value} does not take a model")

    @classmethod
    def scoped(cls, kind: ActionKind, scope: Scope) -> "Action":
        return cls(kind=kind, scope=scope)


@dataclass
class Command:
    agent: str
    action: Action
    args: str = ""
    indices: List[int] = field(default_factory=list)
    private_reply: bool = False
    text_mode: bool = False

    @property
    def kind(self) -> ActionKind:
        return self.action.kind


@dataclass
class CreateRequest:
    """``##名称(描述) 模型 提示词`` 解析结果。"""

    name: str
    description: str = ""
    model: str = ""
    prompt: str = ""


@dataclass
class ApiConfigRequest:
    api_base: str
    api_key: str
