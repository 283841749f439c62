"""提示词与帮助文本加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 markdown 模板。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_prompt(name: str, locale: str = "zh") -> str:
    """加载模板文本，例如 "help"、"describe"。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8")
