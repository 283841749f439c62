"""OAI Core 顶层包。

该包提供符号指令驱动的多智能体对话核心实现，
包括指令解析、智能体注册表、生成状态跟踪、
OpenAI 兼容 Provider 适配与持久化存储等能力。
"""

from oai_core.api.service import get_default_dispatcher, handle_message, shutdown

__all__ = ["get_default_dispatcher", "handle_message", "shutdown"]
