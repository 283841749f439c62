"""对外 API 服务模块。

提供简化的函数接口供上层应用（聊天平台适配层）调用：
把一条收到的消息解析为指令并交给 CommandDispatcher 执行。
"""

from typing import List, Optional

from oai_core.agents.dispatcher import CommandDispatcher, Outcome
from oai_core.agents.formatting import format_quote
from oai_core.agents.manager import PersonaManager
from oai_core.commands.parser import parse_message
from oai_core.commands.schema import ActionKind, ApiConfigRequest, CreateRequest
from oai_core.config.settings import settings
from oai_core.domain.events import MessageEvent, Renderer, Transport
from oai_core.infrastructure.logging.logger import logger
from oai_core.infrastructure.storage.json_store import JsonRegistryStore


_manager: Optional[PersonaManager] = None
_dispatcher: Optional[CommandDispatcher] = None

_CHAT_KINDS = (ActionKind.CHAT, ActionKind.REGENERATE)


def get_default_manager() -> PersonaManager:
    """获取默认的注册表管理器（单例）。"""
    global _manager
    if _manager is None:
        _manager = PersonaManager(store=JsonRegistryStore(root=settings.data_dir))
    return _manager


def get_default_dispatcher(transport: Transport, renderer: Optional[Renderer] = None) -> CommandDispatcher:
    """获取默认的指令分发器（单例），首次调用时绑定 transport/renderer。"""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = CommandDispatcher(
            manager=get_default_manager(),
            transport=transport,
            renderer=renderer,
        )
    return _dispatcher


def shutdown() -> None:
    """关闭默认分发器（插件卸载时调用），下次获取时重新创建。"""
    global _manager, _dispatcher
    if _dispatcher is not None:
        _dispatcher.shutdown()
    elif _manager is not None:
        _manager.shutdown()
    _dispatcher = None
    _manager = None


def handle_message(
    event: MessageEvent,
    dispatcher: CommandDispatcher,
    names: Optional[List[str]] = None,
) -> Optional[Outcome]:
    """解析并执行一条消息。

    Args:
        event: 收到的消息
        dispatcher: 指令分发器
        names: 已注册的智能体名称（默认取分发器注册表的当前快照）

    Returns:
        指令执行结果；消息不是指令时返回 None（不做任何回复）。
    """
    if names is None:
        names = dispatcher.manager.persona_names()
    parsed = parse_message(event.text, names)
    if parsed is None:
        return None

    if isinstance(parsed, ApiConfigRequest):
        return dispatcher.configure_api(parsed, event)
    if isinstance(parsed, CreateRequest):
        return dispatcher.handle_create(parsed, event)

    prompt = parsed.args
    images: List[str] = list(event.images)
    if parsed.kind in _CHAT_KINDS:
        quote_text = ""
        if event.reply_to is not None:
            try:
                quoted = dispatcher.transport.fetch_message(event.reply_to)
            except Exception as e:
                logger.warning("Fetch quoted message failed", extra={"extra": {
                    "message_id": event.reply_to,
                    "error": str(e),
                }})
                quoted = None
            if quoted is not None:
                quote_text = format_quote(quoted.text)
                images.extend(quoted.images)
        prompt = (quote_text + prompt).strip()

    return dispatcher.execute(parsed, prompt, images, event)
