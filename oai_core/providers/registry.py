"""模型列表的过滤、分组与引用解析。

接口返回的模型往往有上百个，这里只保留包含关键字的主流模型；
关键字的顺序同时决定模型列表中分组的展示顺序。
"""

from typing import Dict, List, Optional, Sequence, Tuple

from oai_core.config.settings import settings


def model_keywords() -> List[str]:
    return list(getattr(settings, "listed_model_keywords", []))


def filter_models(models: Sequence[str], keywords: Optional[Sequence[str]] = None) -> List[str]:
    """返回包含任一关键字的模型；没有任何匹配时返回完整列表。"""

    kws = [k.lower() for k in (keywords if keywords is not None else model_keywords())]
    filtered = [m for m in models if any(kw in m.lower() for kw in kws)]
    return filtered or list(models)


def group_models(
    models: Sequence[str], keywords: Optional[Sequence[str]] = None
) -> List[Tuple[str, List[Tuple[int, str]]]]:
    """按关键字分组，组内保留 1 起始的原始序号；未命中的归入 Other Models。"""

    kws = list(keywords if keywords is not None else model_keywords())
    groups: Dict[str, List[Tuple[int, str]]] = {}
    others: List[Tuple[int, str]] = []
    for i, m in enumerate(models, start=1):
        lower = m.lower()
        for kw in kws:
            if kw.lower() in lower:
                groups.setdefault(kw, []).append((i, m))
                break
        else:
            others.append((i, m))
    ordered = [(f"{kw[:1].upper()}{kw[1:]} Series", groups[kw]) for kw in kws if kw in groups]
    if others:
        ordered.append(("Other Models", others))
    return ordered


def resolve_model(ref: str, models: Sequence[str]) -> Optional[str]:
    """把用户输入解析为模型名。

    优先按 1 起始序号取模型列表；否则返回第一个包含该输入（不区分大小写）的模型；
    都不匹配时原样返回输入。空输入返回 None。
    """

    if not ref:
        return None
    if ref.isdigit():
        i = int(ref)
        if 0 < i <= len(models):
            return models[i - 1]
    lower = ref.lower()
    for m in models:
        if lower in m.lower():
            return m
    return ref
