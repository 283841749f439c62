"""全角标点到半角的归一化。

归一化副本只用于结构匹配；参数文本总是从原始字符串中截取。
映射是逐字符一对一的，所以两个字符串按字符下标严格对齐。
"""

FULLWIDTH_MAP = {
    "！": "!",
    "＠": "@",
    "＃": "#",
    "＄": "$",
    "％": "%",
    "＊": "*",
    "（": "(",
    "）": ")",
    "－": "-",
    "＋": "+",
    "：": ":",
    "；": ";",
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
    "，": ",",
    "。": ".",
    "？": "?",
    "～": "~",
    "＿": "_",
    "＆": "&",
    "／": "/",
    "＝": "=",
}

_TABLE = str.maketrans(FULLWIDTH_MAP)


def normalize(text: str) -> str:
    return text.translate(_TABLE)


def raw_slice(raw: str, norm: str, start: int) -> str:
    """返回原始字符串中与归一化字符串第 start 个字符对齐的后缀。"""
    if len(raw) != len(norm):
        raise ValueError("raw and normalized text are not aligned")
    return raw[start:]
