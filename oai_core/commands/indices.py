"""历史索引表达式解析：``1``、``1-5``、``1,3,5``、``1-3，7``。"""

import re
from typing import List

_INDEX_PATTERN = re.compile(r"(\d+)(?:-(\d+))?")

# 单个区间最多展开的数量，防止 ``1-999999999`` 之类的输入耗尽内存
MAX_RANGE_SPAN = 10000


def parse_indices(text: str) -> List[int]:
    """解析为去重后的升序列表。

    反向区间（如 ``3-1``）不产生任何索引；无法解析时返回空列表，
    由调用方视为“未提供有效索引”。
    """
    if not text:
        return []
    cleaned = text.replace("，", ",")
    found: set[int] = set()
    for match in _INDEX_PATTERN.finditer(cleaned):
        start = int(match.group(1))
        end_raw = match.group(2)
        if end_raw is None:
            found.add(start)
            continue
        end = int(end_raw)
        if end < start:
            continue
        end = min(end, start + MAX_RANGE_SPAN - 1)
        found.update(range(start, end + 1))
    found.discard(0)
    return sorted(found)
