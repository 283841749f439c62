"""指令分发核心模块。

把解析后的 Command 映射到注册表/生成状态上的操作，并通过 Transport 回复用户。
每条指令恰好产生一个 Outcome；用户输入导致的错误以 BusinessError 抛出，
在 execute 中统一转换为提示文本，不会向上层泄漏异常。

生成流程：
1. 检查智能体与 API 配置，占用 (智能体, 范围, 用户) 键。
2. 写锁内追加用户消息、版本号 +1 并记录本次版本。
3. 释放锁后在线程池中调用 Provider，最长等待 chat_timeout 秒。
4. 凭占用令牌释放键；若版本号已变化（停止/新消息/清空），静默丢弃结果。
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

from oai_core.agents.formatting import (
    escape_markdown_special,
    format_export_txt,
    format_history,
    format_model_list,
    format_persona_list,
    format_selected,
)
from oai_core.agents.manager import PersonaManager
from oai_core.commands.schema import ActionKind, ApiConfigRequest, Command, CreateRequest
from oai_core.config.settings import settings
from oai_core.domain.events import MessageEvent, Renderer, Transport
from oai_core.domain.exceptions import (
    ApiError,
    BusinessError,
    BusyError,
    GenerationTimeout,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from oai_core.domain.media import DATA_IMAGE_MD, extract_image_urls, extract_video_urls, placeholder_images
from oai_core.domain.models import ChatMessage, ChatRequest
from oai_core.domain.persona import DEFAULT_DESCRIPTION, Persona, validate_name
from oai_core.infrastructure.logging.logger import logger
from oai_core.prompts import load_prompt
from oai_core.providers.registry import resolve_model


OutcomeKind = Literal[
    "ok",
    "not_found",
    "validation",
    "busy",
    "provider_error",
    "timeout",
    "failed",
    "cancelled",
]


@dataclass
class Outcome:
    """一次指令执行的结果。

    cancelled 表示生成结果因版本号变化被丢弃，此时不会回复用户。
    """

    kind: OutcomeKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


def _outcome_kind(err: BusinessError) -> OutcomeKind:
    if isinstance(err, ValidationError):
        return "validation"
    if isinstance(err, NotFoundError):
        return "not_found"
    if isinstance(err, BusyError):
        return "busy"
    if isinstance(err, GenerationTimeout):
        return "timeout"
    if isinstance(err, ProviderError):
        return "provider_error"
    return "failed"


def _not_found(name: str) -> NotFoundError:
    return NotFoundError(code="AGENT_NOT_FOUND", message=f"{name} 不存在", agent=name)


Handler = Callable[[Command, str, List[str], MessageEvent], Outcome]


class CommandDispatcher:
    def __init__(
        self,
        manager: PersonaManager,
        transport: Transport,
        renderer: Optional[Renderer] = None,
        executor: Optional[Executor] = None,
        chat_timeout: Optional[float] = None,
        export_dir: str | Path | None = None,
    ):
        self._manager = manager
        self._transport = transport
        self._renderer = renderer
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="oai-chat")
        self._chat_timeout = chat_timeout or getattr(settings, "chat_timeout", 300.0)
        self._export_dir = Path(export_dir) if export_dir else manager.store.root
        self._handlers: Dict[ActionKind, Handler] = {
            ActionKind.CHAT: self._chat,
            ActionKind.REGENERATE: self._regenerate,
            ActionKind.STOP: self._stop,
            ActionKind.COPY: self._copy,
            ActionKind.RENAME: self._rename,
            ActionKind.SET_DESC: self._set_desc,
            ActionKind.DELETE: self._delete,
            ActionKind.LIST: self._list,
            ActionKind.SET_MODEL: self._set_model,
            ActionKind.SET_PROMPT: self._set_prompt,
            ActionKind.VIEW_PROMPT: self._view_prompt,
            ActionKind.LIST_MODELS: self._list_models,
            ActionKind.VIEW_ALL: self._view_all,
            ActionKind.VIEW_AT: self._view_at,
            ActionKind.EXPORT: self._export,
            ActionKind.EDIT_AT: self._edit_at,
            ActionKind.DELETE_AT: self._delete_at,
            ActionKind.CLEAR_HISTORY: self._clear_history,
            ActionKind.CLEAR_ALL_PUBLIC: self._clear_all_public,
            ActionKind.CLEAR_EVERYTHING: self._clear_everything,
            ActionKind.HELP: self._help,
            ActionKind.AUTO_FILL_DESCRIPTIONS: self._auto_fill_descriptions,
        }

    @property
    def manager(self) -> PersonaManager:
        return self._manager

    @property
    def transport(self) -> Transport:
        return self._transport

    # ---- 对外入口 ----

    def execute(
        self,
        cmd: Command,
        prompt: str,
        images: List[str],
        event: MessageEvent,
    ) -> Outcome:
        """执行一条智能体/全局指令。

        Args:
            cmd: 解析后的指令
            prompt: 已拼接引用内容的提示文本（对话类指令使用）
            images: 当前消息与引用消息中的图片地址
            event: 触发指令的消息
        """
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "agent": cmd.agent, "action": cmd.kind.value}
        handler = self._handlers[cmd.kind]
        try:
            return handler(cmd, prompt, images, event)
        except BusinessError as e:
            return self._fail(event, e, log_ctx)

    def handle_create(self, req: CreateRequest, event: MessageEvent) -> Outcome:
        """创建新智能体，或更新同名智能体的模型/提示词/描述。"""
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "agent": req.name, "action": "create"}
        try:
            return self._create_or_update(req, event)
        except BusinessError as e:
            return self._fail(event, e, log_ctx)

    def configure_api(self, req: ApiConfigRequest, event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            data.api_base = req.api_base
            data.api_key = req.api_key
            self._manager.save(data)
        self._transport.reply_text(event, f"✅ API 已配置: {req.api_base}")
        try:
            models = self._manager.fetch_models()
        except BusinessError as e:
            self._transport.reply_text(event, f"⚠️ 获取模型失败: {e.message}")
            return Outcome("provider_error", e.message)
        return self._ack(event, f"📋 已获取 {len(models)} 个模型")

    def shutdown(self) -> None:
        """停止接收新的生成请求并落盘；进行中的调用不再等待，其结果会被丢弃。"""
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._manager.shutdown()

    # ---- 对话 ----

    def _chat(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        return self._generate(cmd, prompt, images, event, regen=False)

    def _regenerate(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        return self._generate(cmd, prompt, images, event, regen=True)

    def _generate(
        self,
        cmd: Command,
        prompt: str,
        images: List[str],
        event: MessageEvent,
        regen: bool,
    ) -> Outcome:
        name = cmd.agent
        private = cmd.private_reply
        uid = event.user_id
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "agent": name,
            "private": private,
            "uid": uid,
        }

        with self._manager.read() as data:
            if data.find(name) is None:
                raise _not_found(name)
            api_ready = data.api_ready
            api_base, api_key = data.api_base, data.api_key
        if not api_ready:
            raise ValidationError(code="MISSING_API_CONFIG", message="API 未配置")

        token = self._manager.generating.try_start(name, private, uid)
        if token is None:
            raise BusyError(code="BUSY", message="正在生成中，请等待或使用 智能体! 停止")

        try:
            with self._manager.write() as data:
                persona = data.find(name)
                if persona is None:
                    raise _not_found(name)
                hist = self._next_history(persona.history(private, uid), prompt, images, regen)
                persona.replace_history(private, uid, hist)
                version = persona.bump_version()
                request = ChatRequest(
                    model=persona.model,
                    messages=[ChatMessage(m.role, m.content, list(m.images), m.timestamp) for m in hist],
                    system_prompt=persona.system_prompt,
                )
                agent_name = persona.name
                self._manager.save(data)
        except BusinessError:
            self._manager.generating.finish(name, private, uid, token)
            raise

        self._log(logging.INFO, "Calling provider", log_ctx, model=request.model, message_count=len(request.messages))
        start_time = time.time()
        try:
            provider = self._manager.provider_for(api_base, api_key)
            future = self._executor.submit(provider.chat, request)
            result = future.result(timeout=self._chat_timeout)
        except FutureTimeout:
            self._log(logging.WARNING, "Provider timed out", log_ctx, timeout=self._chat_timeout)
            raise GenerationTimeout(
                code="TIMEOUT",
                message=f"请求超时：模型响应时间超过 {int(self._chat_timeout)} 秒，已强制停止。",
            )
        except BusinessError:
            raise
        except Exception as e:
            raise ApiError(code="PROVIDER_ERROR", message=str(e))
        finally:
            self._manager.generating.finish(name, private, uid, token)

        content = result.content
        with self._manager.write() as data:
            persona = data.find(agent_name)
            if persona is None or persona.generation_id != version:
                self._log(logging.INFO, "Discarded stale completion", log_ctx, version=version)
                return Outcome("cancelled")
            if content is None:
                raise ApiError(code="EMPTY_REPLY", message="模型未返回内容")
            target = persona.history_mut(private, uid)
            target.append(ChatMessage(role="assistant", content=content))
            msg_index = len(target)
            self._manager.save(data)

        self._log(
            logging.INFO,
            "Stored assistant message",
            log_ctx,
            index=msg_index,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        header = f"{agent_name} #{msg_index}回复{' (私有)' if private else ''}"
        self._send_reply_with_media(event, content, cmd.text_mode, header)
        return Outcome("ok", content)

    @staticmethod
    def _next_history(
        current: List[ChatMessage],
        prompt: str,
        images: List[str],
        regen: bool,
    ) -> List[ChatMessage]:
        hist = list(current)
        if regen:
            if hist and hist[-1].role == "assistant":
                hist.pop()
            if prompt:
                if hist and hist[-1].role == "user":
                    hist.pop()
                hist.append(ChatMessage(role="user", content=prompt, images=list(images)))
            return hist
        if not prompt and not images:
            raise ValidationError(code="EMPTY_PROMPT", message="请输入内容")
        hist.append(ChatMessage(role="user", content=prompt, images=list(images)))
        return hist

    def _send_reply_with_media(self, event: MessageEvent, content: str, text_mode: bool, header: str) -> None:
        image_urls = extract_image_urls(content)
        if text_mode:
            shown = placeholder_images(content) if image_urls else content
        elif image_urls:
            links = "\n".join("- [Base64 Image]" if u.startswith("data:") else f"- {u}" for u in image_urls)
            shown = f"{content}\n\n---\n**图片链接:**\n{links}"
        else:
            shown = content
        self._reply(event, shown, text_mode, header)
        self._send_images(event, image_urls)
        for url in extract_video_urls(content):
            self._transport.reply_video(event, url)

    def _stop(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            persona.bump_version()
            self._manager.save(data)
        self._manager.generating.finish(cmd.agent, cmd.private_reply, event.user_id)
        return self._ack(event, "🛑 已停止")

    # ---- 智能体管理 ----

    def _create_or_update(self, req: CreateRequest, event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            model = resolve_model(req.model, data.models) or ""
            persona = data.find(req.name)
            if persona is not None:
                if model:
                    persona.model = model
                persona.system_prompt = req.prompt
                if req.description:
                    persona.description = req.description
                text = f"📝 已更新 {persona.name} (模型: {persona.model})"
            else:
                validate_name(req.name, data.names())
                persona = Persona(
                    name=req.name,
                    model=model or data.default_model,
                    system_prompt=req.prompt or data.default_prompt,
                    description=req.description or DEFAULT_DESCRIPTION,
                )
                data.agents.append(persona)
                text = f"🤖 已创建 {persona.name} (模型: {persona.model})"
            self._manager.save(data)
        return self._ack(event, text)

    def _copy(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        new_name = cmd.args
        if not new_name:
            raise ValidationError(code="NAME_EMPTY", message="请指定新名称: 智能体~#新名称")
        with self._manager.write() as data:
            src = self._require(data.find(cmd.agent), cmd.agent)
            validate_name(new_name, data.names())
            data.agents.append(
                Persona(
                    name=new_name,
                    model=src.model,
                    system_prompt=src.system_prompt,
                    description=src.description,
                )
            )
            self._manager.save(data)
        return self._ack(event, f"📑 已复制 {cmd.agent} → {new_name}")

    def _rename(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        new_name = cmd.args
        if not new_name:
            raise ValidationError(code="NAME_EMPTY", message="请指定新名称: 智能体~=新名称")
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            others = [n for n in data.names() if n.lower() != persona.name.lower()]
            validate_name(new_name, others)
            persona.name = new_name
            self._manager.save(data)
        return self._ack(event, f"🏷️ 已重命名 {cmd.agent} → {new_name}")

    def _set_desc(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        if not cmd.args:
            raise ValidationError(code="DESC_EMPTY", message="请提供描述: 智能体:描述内容")
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            persona.description = cmd.args
            self._manager.save(data)
        return self._ack(event, f"📝 {cmd.agent} 描述已更新")

    def _set_model(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        if not cmd.args:
            raise ValidationError(code="MODEL_EMPTY", message="请指定模型: 智能体%模型名")
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            model = resolve_model(cmd.args, data.models)
            if not model:
                raise ValidationError(code="MODEL_INVALID", message="无效模型")
            old = persona.model
            persona.model = model
            self._manager.save(data)
        return self._ack(event, f"🔄 {cmd.agent} 模型: {old} → {model}")

    def _set_prompt(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            persona.system_prompt = cmd.args
            self._manager.save(data)
        if cmd.args:
            return self._ack(event, f"📝 {cmd.agent} 提示词已更新")
        return self._ack(event, f"📝 {cmd.agent} 提示词已清空")

    def _view_prompt(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.read() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            system_prompt, model, name = persona.system_prompt, persona.model, persona.name
        if cmd.text_mode:
            return self._ack(event, system_prompt or "(空)")
        shown = escape_markdown_special(system_prompt) if system_prompt else "(空)"
        content = f"**模型**: `{model}`\n\n**提示词**:\n```\n{shown}\n```"
        self._reply(event, content, cmd.text_mode, f"{name} 系统提示词")
        return Outcome("ok", content)

    def _list(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.read() as data:
            total = len(data.agents)
            content = format_persona_list(data.agents)
        if not total:
            return self._ack(event, "📋 暂无智能体，使用 ##名称 模型 提示词 创建")
        self._reply(event, content, cmd.text_mode, f"📋 智能体列表 (共{total}个)")
        return Outcome("ok", content)

    def _delete(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            idx = data.index_of(cmd.agent)
            if idx is None:
                raise _not_found(cmd.agent)
            removed = data.agents.pop(idx)
            self._manager.save(data)
        return self._ack(event, f"🗑️ 已删除 {removed.name}")

    def _list_models(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.read() as data:
            need_fetch = not data.models
        if need_fetch:
            self._transport.reply_text(event, "⏳ 正在获取模型列表...")
            try:
                self._manager.fetch_models()
            except BusinessError as e:
                raise type(e)(code=e.code, message=f"获取失败: {e.message}", http_status=e.http_status)

        with self._manager.read() as data:
            total = len(data.models)
            content = format_model_list(data.models, data.agents)
        if not total:
            return self._ack(event, "📭 未找到可用模型 (请检查过滤关键字)")
        self._reply(event, content, cmd.text_mode, f"🧩 模型列表 (共{total}个)")
        return Outcome("ok", content)

    def _auto_fill_descriptions(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        model_ref = cmd.action.model or ""
        with self._manager.read() as data:
            use_model = (resolve_model(model_ref, data.models) or model_ref) if model_ref else data.default_model
            targets = [
                (a.name, a.system_prompt)
                for a in data.agents
                if not a.description or a.description == DEFAULT_DESCRIPTION
            ]
            api_ready = data.api_ready

        if not targets:
            return self._ack(event, "✅ 所有智能体均已有描述，无需处理。")
        if not api_ready:
            raise ValidationError(code="MISSING_API_CONFIG", message="API 未配置")

        self._transport.reply_text(event, f"🤖 开始使用 [{use_model}] 为 {len(targets)} 个智能体生成描述，请稍候...")
        provider = self._manager.provider()
        template = load_prompt("describe")
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "action": "auto_fill", "model": use_model}
        success = 0
        for name, system_prompt in targets:
            req = ChatRequest(
                model=use_model,
                messages=[ChatMessage(role="user", content=template.replace("{prompt}", system_prompt))],
            )
            try:
                result = provider.chat(req)
            except BusinessError as e:
                self._log(logging.WARNING, "Describe failed", log_ctx, agent=name, error=e.message)
                continue
            if result.content:
                desc = result.content.strip()
                for ch in ('"', "“", "”", "。", "."):
                    desc = desc.replace(ch, "")
                with self._manager.write() as data:
                    persona = data.find(name)
                    if persona is not None:
                        persona.description = desc
                        self._manager.save(data)
                        success += 1
            time.sleep(getattr(settings, "describe_interval", 0.1))
        return self._ack(event, f"✅ 批量处理完成，已更新 {success} 个智能体的描述。")

    # ---- 历史管理 ----

    def _view_all(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        scope = cmd.action.scope
        with self._manager.read() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            hist = list(persona.history(scope.is_private, event.user_id))
        if not hist:
            return self._ack(event, f"📭 {cmd.agent} {scope.label}历史为空")
        content = format_history(hist, 0, cmd.text_mode)
        self._reply(event, content, cmd.text_mode, f"{cmd.agent} {scope.label}历史 ({len(hist)} 条)")
        return Outcome("ok", content)

    def _view_at(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        if not cmd.indices:
            raise ValidationError(code="INDEX_EMPTY", message="请指定索引: 智能体/索引")
        scope = cmd.action.scope
        with self._manager.read() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            hist = list(persona.history(scope.is_private, event.user_id))
        results = format_selected(hist, cmd.indices, cmd.text_mode)
        if not results:
            raise NotFoundError(code="INDEX_NOT_FOUND", message="索引无效")
        extra_images: List[str] = []
        for i in cmd.indices:
            if 0 < i <= len(hist):
                extra_images.extend(extract_image_urls(hist[i - 1].content))
                extra_images.extend(hist[i - 1].images)
        content = "\n\n---\n\n".join(results)
        self._reply(event, content, cmd.text_mode, f"{cmd.agent} 历史记录")
        self._send_images(event, extra_images)
        return Outcome("ok", content)

    def _export(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        scope = cmd.action.scope
        uid = event.user_id
        with self._manager.read() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            hist = list(persona.history(scope.is_private, uid))
            model = persona.model
        if not hist:
            return self._ack(event, "📭 历史为空")

        content = format_export_txt(cmd.agent, model, scope.label, hist)
        fname = f"{cmd.agent}_{scope.value}_{uid}_{datetime.now().strftime('%Y%m%d%H%M%S')}.txt"
        path = self._export_dir / fname
        try:
            self._export_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="EXPORT_WRITE_ERROR", message=f"写入失败: {e}")
        try:
            self._transport.upload_file(event, path, fname)
        except Exception as e:
            raise BusinessError(code="UPLOAD_ERROR", message=f"上传失败: {e}")
        return self._ack(event, f"📤 已导出: {fname}")

    def _edit_at(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        if not cmd.indices:
            raise ValidationError(code="INDEX_EMPTY", message="请指定索引: 智能体'索引 新内容")
        if not cmd.args:
            raise ValidationError(code="CONTENT_EMPTY", message="请提供新内容")
        idx = cmd.indices[0]
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            if not persona.edit_at(cmd.action.scope.is_private, event.user_id, idx, cmd.args):
                raise NotFoundError(code="INDEX_NOT_FOUND", message=f"索引 {idx} 无效")
            persona.bump_version()
            self._manager.save(data)
        return self._ack(event, f"✏️ 已编辑第 {idx} 条")

    def _delete_at(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        if not cmd.indices:
            raise ValidationError(code="INDEX_EMPTY", message="请指定索引: 智能体-索引 (支持 1,3,5 或 1-5)")
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            deleted = persona.delete_at(cmd.action.scope.is_private, event.user_id, cmd.indices)
            if not deleted:
                raise NotFoundError(code="INDEX_NOT_FOUND", message="索引无效")
            persona.bump_version()
            self._manager.save(data)
        shown = ", ".join(str(i) for i in deleted)
        return self._ack(event, f"🗑️ 已删除第 {shown} 条 (共{len(deleted)}条)")

    def _clear_history(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        scope = cmd.action.scope
        with self._manager.write() as data:
            persona = self._require(data.find(cmd.agent), cmd.agent)
            persona.clear_history(scope.is_private, event.user_id)
            persona.bump_version()
            self._manager.save(data)
        self._manager.generating.finish(cmd.agent, scope.is_private, event.user_id)
        return self._ack(event, f"🧹 {cmd.agent} {scope.label}历史已清空")

    def _clear_all_public(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            for a in data.agents:
                a.public_history.clear()
                a.bump_version()
            count = len(data.agents)
            self._manager.save(data)
        self._manager.generating.clear_public()
        return self._ack(event, f"🧹 已清空 {count} 个智能体的公有历史")

    def _clear_everything(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        with self._manager.write() as data:
            for a in data.agents:
                a.public_history.clear()
                a.private_histories.clear()
                a.bump_version()
            count = len(data.agents)
            self._manager.save(data)
        self._manager.generating.clear_all()
        return self._ack(event, f"⚠️ 已清空 {count} 个智能体的所有历史")

    def _help(self, cmd: Command, prompt: str, images: List[str], event: MessageEvent) -> Outcome:
        content = load_prompt("help")
        self._reply(event, content, cmd.text_mode, "🤖 OAI 符号指令帮助")
        return Outcome("ok", content)

    # ---- 辅助方法 ----

    @staticmethod
    def _require(persona: Optional[Persona], name: str) -> Persona:
        if persona is None:
            raise _not_found(name)
        return persona

    def _ack(self, event: MessageEvent, text: str) -> Outcome:
        self._transport.reply_text(event, text)
        return Outcome("ok", text)

    def _fail(self, event: MessageEvent, err: BusinessError, log_ctx: Dict[str, Any]) -> Outcome:
        kind = _outcome_kind(err)
        if kind == "busy" or kind == "timeout":
            text = f"⏳ {err.message}"
        elif kind == "provider_error":
            text = f"❌ API错误: {err.message}"
        else:
            text = f"❌ {err.message}"
        self._log(logging.INFO if kind in ("validation", "not_found", "busy") else logging.WARNING,
                  "Command rejected", log_ctx, code=err.code, kind=kind)
        self._transport.reply_text(event, text)
        return Outcome(kind, err.message)

    def _reply(self, event: MessageEvent, text: str, text_mode: bool, header: str) -> None:
        """文本模式直接回复；否则渲染为图片，渲染失败时退回纯文本。"""
        if text_mode or self._renderer is None:
            self._transport.reply_text(event, text)
            return
        try:
            b64 = self._renderer.render(text, header)
        except Exception as e:
            logger.warning("Render failed", extra={"extra": {"error": str(e), "title": header}})
            self._transport.reply_text(event, DATA_IMAGE_MD.sub("[图片渲染失败]", text))
            return
        self._transport.reply_image(event, f"base64://{b64}")

    def _send_images(self, event: MessageEvent, urls: List[str]) -> None:
        for url in urls:
            if url.startswith("data:"):
                _, _, payload = url.partition(",")
                if payload:
                    self._transport.reply_image(event, f"base64://{payload}")
            else:
                self._transport.reply_image(event, url)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
