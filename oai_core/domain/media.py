"""从消息文本中提取图片/视频地址。"""

import re
from typing import List

# markdown 内嵌的 base64 图片
DATA_IMAGE_MD = re.compile(r"!\[.*?\]\((data:image/[^\s\)]+)\)")
# markdown 图片（http 或 data URI）
MD_IMAGE = re.compile(r"!\[.*?\]\(((?:https?://|data:image/)[^\s\)]+)\)")
_IMAGE_URL = re.compile(
    r"!\[.*?\]\(((?:https?://|data:image/)[^\s\)]+)\)"
    r"|(?:https?://[^\s]+\.(?:png|jpg|jpeg|gif|webp|bmp))"
)
_VIDEO_URL = re.compile(r"\[download video\]\((https?://[^\s\)]+)\)")


def extract_image_urls(content: str) -> List[str]:
    """按出现顺序返回去重后的图片地址。"""
    urls: List[str] = []
    seen: set[str] = set()
    for match in _IMAGE_URL.finditer(content):
        url = match.group(1) or match.group(0)
        if url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


def extract_video_urls(content: str) -> List[str]:
    return [m.group(1) for m in _VIDEO_URL.finditer(content)]


def placeholder_images(content: str) -> str:
    """文本模式下把 markdown 图片替换为地址，base64 图片替换为 ``[图片]``。"""

    def _sub(match: "re.Match[str]") -> str:
        url = match.group(1)
        return "[图片]" if url.startswith("data:") else url

    return MD_IMAGE.sub(_sub, content)
