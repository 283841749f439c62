"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResult 模型。
- persona: 智能体与注册表模型、名称校验。
- events: 消息事件与 Transport / Renderer 协议。
- media: 回复内容中的图片/视频链接提取。
- exceptions: 业务异常类型定义。
"""
