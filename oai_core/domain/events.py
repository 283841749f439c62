"""消息事件与外部协作方协议。

指令分发层不直接依赖具体聊天平台或渲染实现，而是依赖这里的协议：

- Transport: 回复文本/图片/视频，上传文件，按 id 获取被引用的消息。
- Renderer: 把 markdown 渲染成图片（base64）。
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol


@dataclass
class QuotedMessage:
    """被引用消息中可提取的内容。"""

    text: str = ""
    images: List[str] = field(default_factory=list)


@dataclass
class MessageEvent:
    """一条收到的聊天消息。

    - images: 当前消息中携带的图片/视频地址。
    - reply_to: 被引用消息的 id（没有引用时为 None）。
    - group_id: 群聊 id，私聊时为 None。
    """

    message_id: int
    user_id: str
    text: str
    images: List[str] = field(default_factory=list)
    reply_to: Optional[int] = None
    group_id: Optional[str] = None


class Transport(Protocol):
    def reply_text(self, event: MessageEvent, text: str) -> None:
        ...

    def reply_image(self, event: MessageEvent, image: str) -> None:
        """image 为 url 或 "base64://..." 形式。"""
        ...

    def reply_video(self, event: MessageEvent, url: str) -> None:
        ...

    def upload_file(self, event: MessageEvent, path: Path, filename: str) -> None:
        ...

    def fetch_message(self, message_id: int) -> Optional[QuotedMessage]:
        ...


class Renderer(Protocol):
    def render(self, markdown: str, title: str) -> str:
        """返回 base64 编码的图片，失败时抛出异常。"""
        ...
