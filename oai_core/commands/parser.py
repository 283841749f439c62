"""符号指令解析器。

指令格式: ``[&]["]智能体名[操作符][参数]``

- 模式前缀: ``&`` 私有 | ``"`` 文本（可任意组合、重复）
- 操作符: ``#`` 创建 | ``~`` 复制/重新 | ``/`` 查看 | ``-`` 删除 | ``_`` 导出 | ``'`` 编辑 | ``!`` 停止
- 对象符: ``@`` 智能体 | ``$`` 提示词 | ``%`` 模型 | ``:`` 描述
- 范围符: ``*`` 全部 | 数字索引 ``1`` / ``1-5`` / ``1,3,5``

结构匹配一律在归一化（全角转半角）副本上进行，参数文本从原始字符串按相同
字符下标截取。解析不会因为格式错误抛异常：结构不完整的智能体指令退化为普通对话，
其它无法识别的输入返回 None。
"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence, Tuple, Union

from oai_core.domain.persona import MODEL_MAX_CHARS, is_valid_name

from .indices import parse_indices
from .normalizer import normalize, raw_slice
from .schema import (
    Action,
    ActionKind,
    ApiConfigRequest,
    Command,
    CreateRequest,
    Scope,
)

PRIVATE_MARK = "&"
TEXT_MARK = '"'
CREATE_PREFIX = "##"
DELETE_PREFIX = "-#"

_API_PATTERN = re.compile(r"(?s)^(https?://\S+)\s+(sk-\S+)$|^(sk-\S+)\s+(https?://\S+)$")
_WS = re.compile(r"\s")

ParseOutcome = Union[ApiConfigRequest, CreateRequest, Command]

_GLOBAL_EXACT = {
    "oai": ActionKind.HELP,
    "/#": ActionKind.LIST,
    "/%": ActionKind.LIST_MODELS,
    "-*": ActionKind.CLEAR_ALL_PUBLIC,
    "-*!": ActionKind.CLEAR_EVERYTHING,
}


def parse_api(raw: str) -> Optional[ApiConfigRequest]:
    """识别 ``API地址 API密钥``（顺序任意）。"""
    match = _API_PATTERN.match(raw.strip())
    if not match:
        return None
    if match.group(1):
        return ApiConfigRequest(api_base=match.group(1), api_key=match.group(2))
    return ApiConfigRequest(api_base=match.group(4), api_key=match.group(3))


def parse_global(raw: str) -> Optional[Command]:
    text = raw.strip()
    norm = normalize(text)
    kind = _GLOBAL_EXACT.get(norm)
    if kind is not None:
        return Command(agent="", action=Action(kind))
    if norm.startswith("##:"):
        model = raw_slice(text, norm, 3).strip()
        return Command(agent="", action=Action(ActionKind.AUTO_FILL_DESCRIPTIONS, model=model))
    return None


def parse_create(raw: str) -> Optional[CreateRequest]:
    """解析 ``##名称(描述) 模型 提示词``，格式不合法时返回 None。"""
    text = raw.strip()
    norm = normalize(text)
    if not norm.startswith(CREATE_PREFIX):
        return None
    after = raw_slice(text, norm, len(CREATE_PREFIX))
    after_norm = norm[len(CREATE_PREFIX):]

    name_end = len(after_norm)
    for i, c in enumerate(after_norm):
        if c.isspace() or c == "(":
            name_end = i
            break
    name = after[:name_end].strip()
    if not is_valid_name(name):
        return None

    rest = after[name_end:]
    rest_norm = after_norm[name_end:]
    description = ""
    if rest_norm.startswith("("):
        close = rest_norm.find(")")
        if close != -1:
            description = rest[1:close].strip()
            rest = rest[close + 1:]

    parts = rest.split(None, 1)
    model = parts[0] if parts else ""
    if len(model) > MODEL_MAX_CHARS:
        return None
    prompt = parts[1].strip() if len(parts) > 1 else ""
    return CreateRequest(name=name, description=description, model=model, prompt=prompt)


def parse_delete_persona(raw: str, names: Iterable[str]) -> Optional[str]:
    """``-#名称``：名称必须与已注册智能体（不区分大小写）完全一致。"""
    text = raw.strip()
    norm = normalize(text)
    if not norm.startswith(DELETE_PREFIX):
        return None
    target = raw_slice(text, norm, len(DELETE_PREFIX)).strip().lower()
    for name in names:
        if name.lower() == target:
            return name
    return None


def match_persona(content: str, names: Iterable[str]) -> Optional[str]:
    """返回作为 content 前缀的最长已注册名称（不区分大小写）。

    content 必须是归一化后的文本；比较按字符逐段截取，不依赖 lower() 后的长度。
    """
    for name in sorted(names, key=len, reverse=True):
        if not name:
            continue
        head = content[: len(name)]
        if head.lower() == normalize(name).lower():
            return name
    return None


def parse_persona_command(raw: str, names: Sequence[str]) -> Optional[Command]:
    text = raw.strip()
    if not text:
        return None
    norm = normalize(text)

    pos = 0
    private_reply = False
    text_mode = False
    while pos < len(norm):
        c = norm[pos]
        if c == PRIVATE_MARK:
            private_reply = True
        elif c == TEXT_MARK:
            text_mode = True
        else:
            break
        pos += 1

    content_norm = norm[pos:]
    content_raw = raw_slice(text, norm, pos)
    name = match_persona(content_norm, names)
    if name is None:
        return None

    suffix_norm = content_norm[len(name):].strip()
    suffix_raw = raw_slice(content_raw, content_norm, len(name)).strip()
    action, args, indices = parse_suffix(suffix_norm, suffix_raw, private_reply)
    return Command(
        agent=name,
        action=action,
        args=args,
        indices=indices,
        private_reply=private_reply,
        text_mode=text_mode,
    )


def parse_suffix(norm: str, raw: str, has_private_prefix: bool) -> Tuple[Action, str, list]:
    """按优先级解析名称之后的部分。

    norm 与 raw 必须逐字符对齐（raw 经过 normalize 后等于 norm）。
    """
    s = norm
    r = raw

    if not s:
        return Action(ActionKind.CHAT), r, []

    if s.startswith("~#"):
        return Action(ActionKind.COPY), r[2:].strip(), []

    if s.startswith("~="):
        return Action(ActionKind.RENAME), r[2:].strip(), []

    if s.startswith("~"):
        return Action(ActionKind.REGENERATE), r[1:].strip(), []

    if s == "!":
        return Action(ActionKind.STOP), "", []

    if s.startswith(":") and not s.startswith(":/"):
        return Action(ActionKind.SET_DESC), r[1:].strip(), []

    if s.startswith("%"):
        return Action(ActionKind.SET_MODEL), r[1:].strip(), []

    if s.startswith("$"):
        return Action(ActionKind.SET_PROMPT), r[1:].strip(), []

    if s == "/$":
        return Action(ActionKind.VIEW_PROMPT), "", []

    local_private = s.startswith(PRIVATE_MARK)
    clean = s[1:] if local_private else s
    clean_raw = r[1:] if local_private else r
    scope = Scope.PRIVATE if (has_private_prefix or local_private) else Scope.PUBLIC

    if clean == "/*":
        return Action.scoped(ActionKind.VIEW_ALL, scope), "", []

    if clean.startswith("/") and len(clean) > 1:
        indices = parse_indices(clean[1:])
        if indices:
            return Action.scoped(ActionKind.VIEW_AT, scope), "", indices

    if clean == "_*":
        return Action.scoped(ActionKind.EXPORT, scope), "", []

    if clean.startswith("'"):
        parts = _WS.split(clean_raw[1:], maxsplit=1)
        indices = parse_indices(normalize(parts[0]))
        content = parts[1].strip() if len(parts) > 1 else ""
        return Action.scoped(ActionKind.EDIT_AT, scope), content, indices

    if clean == "-*":
        return Action.scoped(ActionKind.CLEAR_HISTORY, scope), "", []

    if clean.startswith("-") and len(clean) > 1:
        indices = parse_indices(clean[1:])
        if indices:
            return Action.scoped(ActionKind.DELETE_AT, scope), "", indices

    return Action(ActionKind.CHAT), r, []


def parse_message(raw: str, names: Sequence[str]) -> Optional[ParseOutcome]:
    """统一入口：API 配置 → 全局指令 → 创建 → 删除智能体 → 智能体指令。"""
    api = parse_api(raw)
    if api is not None:
        return api
    cmd = parse_global(raw)
    if cmd is not None:
        return cmd
    create = parse_create(raw)
    if create is not None:
        return create
    deleted = parse_delete_persona(raw, names)
    if deleted is not None:
        return Command(agent=deleted, action=Action(ActionKind.DELETE))
    return parse_persona_command(raw, names)
