"""历史、列表与导出内容的文本格式化。"""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from typing import Dict, List, Sequence

from oai_core.domain.media import DATA_IMAGE_MD, placeholder_images
from oai_core.domain.models import ChatMessage
from oai_core.domain.persona import Persona
from oai_core.providers.registry import group_models

ROLE_EMOJI = {"user": "👤", "assistant": "🤖", "system": "⚙️"}
ROLE_LABEL = {"user": "👤 用户", "assistant": "🤖 助手", "system": "⚙️ 系统"}


def _local_time(ts: int, fmt: str) -> str:
    try:
        return datetime.fromtimestamp(ts).strftime(fmt)
    except (OverflowError, OSError, ValueError):
        return ""


def truncate_str(s: str, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + "..."


def escape_markdown_special(s: str) -> str:
    """JSON 转义特殊字符，再把 \\n、\\t 还原，保持可读性。"""
    escaped = json.dumps(s, ensure_ascii=False)[1:-1]
    return escaped.replace("\\n", "\n").replace("\\t", "\t")


def _media_lines(images: Sequence[str], text_mode: bool) -> str:
    if text_mode:
        return "\n".join(
            "- [Base64 Image]" if u.startswith("data:") else f"- [图片] {u}" for u in images
        )
    return "\n".join(f"![image]({u})" for u in images)


def format_message(index: int, m: ChatMessage, text_mode: bool, with_time: bool = True) -> str:
    body = DATA_IMAGE_MD.sub("[图片]", m.content) if text_mode else m.content
    if m.images:
        if body:
            body += "\n\n"
        body += _media_lines(m.images, text_mode)
    if not body.strip():
        body = "(无内容)"
    emoji = ROLE_EMOJI.get(m.role, "❓")
    if with_time:
        return f"**#{index} {emoji} {_local_time(m.timestamp, '%m-%d %H:%M')}**\n{body}"
    return f"**#{index} {emoji}**\n{body}"


def format_history(hist: Sequence[ChatMessage], offset: int = 0, text_mode: bool = False) -> str:
    return "\n\n---\n\n".join(
        format_message(offset + i + 1, m, text_mode) for i, m in enumerate(hist)
    )


def format_selected(hist: Sequence[ChatMessage], indices: Sequence[int], text_mode: bool) -> List[str]:
    """按 1 起始索引挑选消息，越界索引被跳过。"""
    out: List[str] = []
    for i in indices:
        if 0 < i <= len(hist):
            m = hist[i - 1]
            if text_mode:
                m = ChatMessage(role=m.role, content=placeholder_images(m.content), images=m.images, timestamp=m.timestamp)
            out.append(format_message(i, m, text_mode, with_time=False))
    return out


def format_quote(text: str) -> str:
    """把被引用的文本转换为 markdown 引用块，并与正文空一行。"""
    trimmed = text.strip()
    if not trimmed:
        return ""
    return "".join(f"> {line}\n" for line in trimmed.splitlines()) + "\n"


def format_export_txt(agent_name: str, model: str, scope: str, hist: Sequence[ChatMessage]) -> str:
    separator = "─" * 40
    thin_sep = "┄" * 40
    lines: List[str] = [
        f"┏{'━' * 40}┓",
        f"┃  智能体: {agent_name:<32}┃",
        f"┃  模  型: {model:<32}┃",
        f"┃  类  型: {scope:<32}┃",
        f"┃  导  出: {datetime.now().strftime('%Y-%m-%d %H:%M:%S'):<32}┃",
        f"┃  记录数: {len(hist):<32}┃",
        f"┗{'━' * 40}┛",
        "",
    ]
    content = "\n".join(lines) + "\n"

    for i, m in enumerate(hist, start=1):
        when = _local_time(m.timestamp, "%Y-%m-%d %H:%M:%S") or "未知时间"
        role_name = ROLE_LABEL.get(m.role, m.role)
        content += f"【#{i} {role_name} | {when}】\n{thin_sep}\n"
        content += DATA_IMAGE_MD.sub("[图片数据]", m.content) + "\n"
        if m.images:
            content += f"\n📷 附图 ({len(m.images)} 张):\n"
            for j, url in enumerate(m.images, start=1):
                shown = "[Base64 Image Data]" if url.startswith("data:") else url
                content += f"   {j}. {shown}\n"
        content += f"\n{separator}\n\n"
    return content


def persona_summary(a: Persona) -> str:
    """优先显示描述，其次提示词前 20 字。"""
    if a.description:
        return truncate_str(a.description, 20)
    if a.system_prompt:
        return truncate_str(a.system_prompt, 20)
    return "无描述"


def format_persona_list(agents: Sequence[Persona]) -> str:
    """按模型分组（模型名排序），组内按名称排序，保留 1 起始的注册序号。"""
    groups: Dict[str, List[tuple]] = {}
    for i, a in enumerate(agents, start=1):
        groups.setdefault(a.model, []).append((i, a))

    blocks: List[str] = []
    for model in sorted(groups):
        members = sorted(groups[model], key=lambda item: item[1].name.lower())
        lines = [f"### 📦 {model or '(未设置)'} ({len(members)})"]
        for idx, a in members:
            lines.append(f"- `{idx}` **{a.name}** {persona_summary(a)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_model_list(models: Sequence[str], agents: Sequence[Persona]) -> str:
    usage = Counter(a.model for a in agents)
    blocks: List[str] = []
    for title, items in group_models(models):
        lines = [f"### {title}"]
        for idx, name in items:
            badge = f" ({usage[name]}用)" if usage.get(name) else ""
            lines.append(f"- `{idx}` {name}{badge}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
