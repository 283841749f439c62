"""OpenAI 兼容接口的 Provider 适配器。

接口风格与 OpenAI 一致：
- URL: {api_base}/chat/completions 与 {api_base}/models
- 认证: Authorization: Bearer <api_key>

本模块负责：

1. 把 ChatRequest（系统提示词 + 历史）转换为 chat/completions 请求体，
   用户消息中的图片转换为 image_url 内容片段。
2. 调用 HTTP 接口并把网络/限流/服务端错误包装为统一的业务异常。
3. 将响应 JSON 解析为统一的 ChatResult。
"""

from typing import Any, Dict, List

import httpx

from oai_core.config.settings import settings
from oai_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from oai_core.domain.media import DATA_IMAGE_MD, extract_image_urls
from oai_core.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage


class OpenAICompatClient:
    """OpenAI 兼容 Provider 客户端实现。"""

    name = "openai"

    def __init__(self, api_base: str, api_key: str, timeout: float | None = None):
        self._api_base = (api_base or "").rstrip("/")
        self._api_key = api_key or ""
        # 单次请求的 HTTP 超时；整体等待上限由调用方控制
        self._timeout = timeout or settings.chat_timeout

    def chat(self, req: ChatRequest) -> ChatResult:
        self._ensure_configured()
        payload = self._build_payload(req)
        resp = self._post("/chat/completions", payload)
        return self._parse_response(self._json(resp), req)

    def list_models(self) -> List[str]:
        self._ensure_configured()
        try:
            with httpx.Client(timeout=settings.http_timeout, trust_env=False) as client:
                resp = client.get(f"{self._api_base}/models", headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp)
        items = self._json(resp).get("data") or []
        if not isinstance(items, list):
            raise ApiError(code="INVALID_RESPONSE", message="模型列表格式错误", http_status=resp.status_code)
        return [m["id"] for m in items if isinstance(m, dict) and m.get("id")]

    # ---- 辅助方法 ----

    def _ensure_configured(self) -> None:
        if not self._api_base or not self._api_key:
            raise ValidationError(code="MISSING_API_CONFIG", message="API 未配置")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict) -> httpx.Response:
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.post(f"{self._api_base}{path}", json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp)
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        """解析响应体；非 JSON（含解码失败）或顶层不是对象时视为接口错误。"""
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(
                code="INVALID_RESPONSE",
                message=f"接口返回的不是 JSON: {resp.text[:80]}",
                http_status=resp.status_code,
            )
        if not isinstance(data, dict):
            raise ApiError(code="INVALID_RESPONSE", message="接口返回格式错误", http_status=resp.status_code)
        return data

    def _build_payload(self, req: ChatRequest) -> dict:
        msgs: List[Dict[str, Any]] = []
        if req.system_prompt:
            msgs.append({"role": "system", "content": req.system_prompt})
        for m in req.messages:
            msgs.extend(self._message_to_payload(m))
        return {"model": req.model, "messages": msgs}

    def _message_to_payload(self, message: ChatMessage) -> List[Dict[str, Any]]:
        """单条历史消息可能展开为 0~2 条请求消息。

        - user: 文本与图片合并为内容片段，两者都为空时跳过。
        - assistant: 内嵌的 base64 图片替换为占位符，生成过的图片以一条
          追加的 user 消息回传，让模型能“看到”自己之前的输出。
        """
        if message.role == "user":
            parts: List[Dict[str, Any]] = []
            if message.content:
                parts.append({"type": "text", "text": message.content})
            for url in message.images:
                parts.append({"type": "image_url", "image_url": {"url": url}})
            if not parts:
                return []
            return [{"role": "user", "content": parts}]

        if message.role == "assistant":
            out: List[Dict[str, Any]] = [
                {"role": "assistant", "content": DATA_IMAGE_MD.sub("[Image Created]", message.content)}
            ]
            generated = extract_image_urls(message.content)
            if generated:
                out.append(
                    {
                        "role": "user",
                        "content": [{"type": "image_url", "image_url": {"url": u}} for u in generated],
                    }
                )
            return out

        return [{"role": message.role, "content": message.content}]

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        raw_choices = data.get("choices") or []
        if not isinstance(raw_choices, list) or not all(isinstance(ch, dict) for ch in raw_choices):
            raise ApiError(code="INVALID_RESPONSE", message="接口返回格式错误")
        choices: list[ChatChoice] = []
        for i, ch in enumerate(raw_choices):
            msg = ch.get("message")
            if not isinstance(msg, dict):
                msg = {}
            content = msg.get("content")
            cm = ChatMessage(role=msg.get("role") or "assistant", content=content if isinstance(content, str) else "")
            choices.append(ChatChoice(index=i, message=cm, finish_reason=ch.get("finish_reason")))
        usage_raw = data.get("usage") or {}
        usage = None
        if isinstance(usage_raw, dict) and usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatResult(model=req.model, choices=choices, usage=usage, raw=data)
