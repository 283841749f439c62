import json
import tempfile
import threading
import time
from pathlib import Path

import pytest

from oai_core.agents.dispatcher import CommandDispatcher
from oai_core.agents.manager import PersonaManager
from oai_core.api import service
from oai_core.api.service import handle_message
from oai_core.config.settings import settings
from oai_core.domain.events import MessageEvent, QuotedMessage
from oai_core.domain.exceptions import ApiError
from oai_core.domain.models import ChatChoice, ChatMessage, ChatResult
from oai_core.domain.persona import Persona, RegistryData
from oai_core.infrastructure.storage.json_store import JsonRegistryStore
from oai_core.providers.openai_client import OpenAICompatClient


class FakeTransport:
    def __init__(self):
        self.texts = []
        self.images = []
        self.videos = []
        self.files = []
        self.quotes = {}

    def reply_text(self, event, text):
        self.texts.append(text)

    def reply_image(self, event, image):
        self.images.append(image)

    def reply_video(self, event, url):
        self.videos.append(url)

    def upload_file(self, event, path, filename):
        self.files.append((Path(path), filename))

    def fetch_message(self, message_id):
        return self.quotes.get(message_id)


class FakeProvider:
    name = "fake"

    def __init__(self, reply="done", models=None, gate=None):
        self.reply = reply
        self.models = models or []
        self.gate = gate
        self.requests = []

    def chat(self, req):
        self.requests.append(req)
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(self.reply, Exception):
            raise self.reply
        msg = ChatMessage(role="assistant", content=self.reply)
        return ChatResult(model=req.model, choices=[ChatChoice(index=0, message=msg)])

    def list_models(self):
        return list(self.models)


class FakeRenderer:
    def __init__(self, fail=False):
        self.fail = fail
        self.titles = []

    def render(self, markdown, title):
        if self.fail:
            raise RuntimeError("no browser")
        self.titles.append(title)
        return "aW1n"


class Env:
    def __init__(self, root, provider=None, renderer=None, chat_timeout=None, with_bot=True):
        self.provider = provider or FakeProvider()
        self.transport = FakeTransport()
        self.store = JsonRegistryStore(root=root)
        self.manager = PersonaManager(self.store, provider_factory=lambda base, key: self.provider)
        with self.manager.write() as data:
            data.api_base = "https://api.test/v1"
            data.api_key = "sk-test-key"
            if with_bot:
                data.agents.append(Persona(name="Bot", model="gpt-4o", system_prompt="sys"))
        self.dispatcher = CommandDispatcher(
            self.manager,
            self.transport,
            renderer=renderer,
            chat_timeout=chat_timeout,
        )

    def send(self, text, user_id="u1", reply_to=None, images=None):
        event = MessageEvent(message_id=1, user_id=user_id, text=text, images=images or [], reply_to=reply_to)
        return handle_message(event, self.dispatcher)

    def bot(self):
        return self.manager.find("Bot")


@pytest.fixture
def env_root():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d) / ".storage"


def _wait_until(pred, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return False


def _seed(env, contents, private=False, uid="u1"):
    with env.manager.write() as data:
        p = data.find("Bot")
        p.replace_history(
            private,
            uid,
            [ChatMessage(role="user" if i % 2 == 0 else "assistant", content=c) for i, c in enumerate(contents)],
        )


def test_create_then_update(env_root):
    env = Env(env_root)
    out = env.send("##Bot2(helper) gpt-5 You are helpful")
    assert out.ok
    bot2 = env.manager.find("Bot2")
    assert (bot2.model, bot2.description, bot2.system_prompt) == ("gpt-5", "helper", "You are helpful")

    out = env.send("##bot2 claude new prompt")
    assert out.ok
    bot2 = env.manager.find("Bot2")
    assert (bot2.model, bot2.description, bot2.system_prompt) == ("claude", "helper", "new prompt")
    assert len(env.manager.persona_names()) == 2


def test_create_uses_defaults_for_missing_fields(env_root):
    env = Env(env_root)
    env.send("##Bare")
    bare = env.manager.find("Bare")
    assert bare.model == settings.default_model
    assert bare.system_prompt == settings.default_prompt
    assert bare.description == "新建智能体"


def test_chat_appends_user_and_assistant(env_root):
    env = Env(env_root)
    out = env.send("Bot hello")
    assert out.ok and out.message == "done"

    hist = env.bot().public_history
    assert [(m.role, m.content) for m in hist] == [("user", "hello"), ("assistant", "done")]
    assert env.bot().generation_id == 1
    req = env.provider.requests[0]
    assert req.system_prompt == "sys"
    assert req.model == "gpt-4o"
    assert env.transport.texts[-1] == "done"
    assert not env.manager.generating.is_generating("Bot", False, "u1")

    reloaded = JsonRegistryStore(root=env_root).load(RegistryData())
    assert len(reloaded.find("Bot").public_history) == 2


def test_private_chat_is_isolated_per_user(env_root):
    env = Env(env_root)
    env.send("&Bot hi", user_id="u1")
    env.send("&Bot yo", user_id="u2")
    bot = env.bot()
    assert bot.public_history == []
    assert [m.content for m in bot.private_histories["u1"]] == ["hi", "done"]
    assert [m.content for m in bot.private_histories["u2"]] == ["yo", "done"]


def test_empty_chat_is_rejected_without_mutation(env_root):
    env = Env(env_root)
    out = env.send("Bot")
    assert out.kind == "validation"
    assert env.bot().public_history == []
    assert env.bot().generation_id == 0
    assert not env.manager.generating.is_generating("Bot", False, "u1")


def test_second_chat_while_pending_is_busy(env_root):
    gate = threading.Event()
    env = Env(env_root, provider=FakeProvider(gate=gate))
    results = []
    t = threading.Thread(target=lambda: results.append(env.send("Bot hello")))
    t.start()
    try:
        assert _wait_until(lambda: env.provider.requests)
        out = env.send("Bot again")
        assert out.kind == "busy"
        assert env.transport.texts[-1].startswith("⏳")
        assert [m.content for m in env.bot().public_history] == ["hello"]

        # 其他用户的私有范围不受影响
        assert env.manager.generating.try_start("Bot", True, "u2")
        env.manager.generating.finish("Bot", True, "u2")
    finally:
        gate.set()
        t.join(5)
    assert results[0].ok
    assert [m.content for m in env.bot().public_history] == ["hello", "done"]


def test_stop_discards_late_result(env_root):
    gate = threading.Event()
    env = Env(env_root, provider=FakeProvider(gate=gate))
    results = []
    t = threading.Thread(target=lambda: results.append(env.send("Bot hello")))
    t.start()
    try:
        assert _wait_until(lambda: env.provider.requests)
        out = env.send("Bot!")
        assert out.ok
        assert not env.manager.generating.is_generating("Bot", False, "u1")
        assert env.bot().generation_id == 2
    finally:
        gate.set()
        t.join(5)
    assert results[0].kind == "cancelled"
    assert [m.content for m in env.bot().public_history] == ["hello"]
    assert "done" not in env.transport.texts


def test_newer_clear_discards_late_result(env_root):
    gate = threading.Event()
    env = Env(env_root, provider=FakeProvider(gate=gate))
    results = []
    t = threading.Thread(target=lambda: results.append(env.send("Bot hello")))
    t.start()
    try:
        assert _wait_until(lambda: env.provider.requests)
        assert env.send("Bot-*").ok
    finally:
        gate.set()
        t.join(5)
    assert results[0].kind == "cancelled"
    assert env.bot().public_history == []


def test_timeout_releases_key_and_keeps_prompt(env_root):
    gate = threading.Event()
    env = Env(env_root, provider=FakeProvider(gate=gate), chat_timeout=0.05)
    try:
        out = env.send("Bot slow")
        assert out.kind == "timeout"
        assert not env.manager.generating.is_generating("Bot", False, "u1")
        assert [m.content for m in env.bot().public_history] == ["slow"]
    finally:
        gate.set()


def test_provider_error_keeps_prompt(env_root):
    env = Env(env_root, provider=FakeProvider(reply=ApiError(code="API_ERROR", message="bad gateway")))
    out = env.send("Bot hello")
    assert out.kind == "provider_error"
    assert env.transport.texts[-1] == "❌ API错误: bad gateway"
    assert [m.content for m in env.bot().public_history] == ["hello"]
    assert not env.manager.generating.is_generating("Bot", False, "u1")


def test_chat_without_api_config(env_root):
    env = Env(env_root)
    with env.manager.write() as data:
        data.api_base = ""
    out = env.send("Bot hello")
    assert out.kind == "validation"
    assert env.bot().public_history == []


def test_unknown_persona_is_not_found(env_root):
    env = Env(env_root)
    assert env.send("Ghost hi") is None
    event = MessageEvent(message_id=1, user_id="u1", text="Ghost hi")
    out = handle_message(event, env.dispatcher, names=["Ghost"])
    assert out.kind == "not_found"
    assert env.transport.texts[-1] == "❌ Ghost 不存在"


def test_regenerate_replaces_last_reply(env_root):
    env = Env(env_root, provider=FakeProvider(reply="second"))
    _seed(env, ["q", "first"])
    out = env.send("Bot~")
    assert out.ok
    assert [m.content for m in env.provider.requests[0].messages] == ["q"]
    assert [m.content for m in env.bot().public_history] == ["q", "second"]

    env.send("Bot~ other question")
    assert [m.content for m in env.bot().public_history] == ["other question", "second"]


def test_quote_is_prepended_to_prompt(env_root):
    env = Env(env_root)
    env.transport.quotes[7] = QuotedMessage(text="line1\nline2", images=["http://x/q.png"])
    env.send("Bot explain", reply_to=7, images=["http://x/own.png"])
    user = env.provider.requests[0].messages[-1]
    assert user.content == "> line1\n> line2\n\nexplain"
    assert user.images == ["http://x/own.png", "http://x/q.png"]


def test_reply_images_and_videos_are_sent(env_root):
    reply = "看图 ![a](http://x/gen.png) [download video](http://x/v.mp4)"
    env = Env(env_root, provider=FakeProvider(reply=reply))
    env.send('"Bot draw')
    assert env.transport.images == ["http://x/gen.png"]
    assert env.transport.videos == ["http://x/v.mp4"]
    assert "![a]" not in env.transport.texts[-1]


def test_history_delete_edit_view(env_root):
    env = Env(env_root)
    _seed(env, ["m1", "m2", "m3", "m4"])

    out = env.send("Bot-1,3")
    assert out.ok
    assert [m.content for m in env.bot().public_history] == ["m2", "m4"]
    assert env.bot().generation_id == 1

    assert env.send("Bot'1 edited").ok
    assert env.bot().public_history[0].content == "edited"
    assert env.bot().generation_id == 2

    out = env.send('"Bot/2')
    assert out.ok and "m4" in out.message

    out = env.send("Bot/5")
    assert out.kind == "not_found"
    out = env.send("Bot'9 x")
    assert out.kind == "not_found"
    out = env.send("Bot'")
    assert out.kind == "validation"
    assert env.bot().generation_id == 2


def test_clear_private_history_leaves_public(env_root):
    env = Env(env_root)
    _seed(env, ["pub"])
    _seed(env, ["mine"], private=True)
    assert env.send("Bot&-*").ok
    assert env.bot().private_histories["u1"] == []
    assert [m.content for m in env.bot().public_history] == ["pub"]


def test_view_all_empty_and_rendered(env_root):
    renderer = FakeRenderer()
    env = Env(env_root, renderer=renderer)
    out = env.send("Bot/*")
    assert out.ok and "历史为空" in out.message

    _seed(env, ["m1", "m2"])
    env.send("Bot/*")
    assert env.transport.images[-1] == "base64://aW1n"
    assert renderer.titles[-1] == "Bot 公有历史 (2 条)"


def test_render_failure_falls_back_to_text(env_root):
    env = Env(env_root, renderer=FakeRenderer(fail=True))
    _seed(env, ["m1"])
    out = env.send("Bot/*")
    assert out.ok
    assert "m1" in env.transport.texts[-1]


def test_export_writes_and_uploads(env_root):
    env = Env(env_root)
    _seed(env, ["q", "a"])
    out = env.send("Bot_*")
    assert out.ok
    path, fname = env.transport.files[0]
    assert fname.startswith("Bot_public_u1_") and fname.endswith(".txt")
    text = path.read_text(encoding="utf-8")
    assert "智能体: Bot" in text
    assert "记录数: 2" in text


def test_persona_management(env_root):
    env = Env(env_root)
    with env.manager.write() as data:
        data.models = ["gpt-4o", "claude-3"]

    assert env.send("Bot%2").ok
    assert env.bot().model == "claude-3"

    assert env.send("Bot:翻译助手").ok
    assert env.bot().description == "翻译助手"

    assert env.send("Bot$").ok
    assert env.bot().system_prompt == ""

    assert env.send("Bot~#Bot2").ok
    assert env.manager.find("Bot2").model == "claude-3"
    assert env.manager.find("Bot2").public_history == []

    out = env.send("Bot~#bot2")
    assert out.kind == "validation"

    assert env.send("Bot2~=Neo").ok
    assert env.manager.find("Bot2") is None
    assert env.manager.find("Neo") is not None

    out = env.send("Neo~=Bad/Name")
    assert out.kind == "validation"
    assert env.transport.texts[-1] == "❌ 名称限制：最多7字且不能包含指令符号"

    assert env.send("-#neo").ok
    assert env.manager.persona_names() == ["Bot"]


def test_list_and_help(env_root):
    env = Env(env_root)
    out = env.send("/#")
    assert out.ok and "**Bot**" in out.message
    out = env.send("oai")
    assert out.ok and "##" in out.message


def test_list_models_fetches_when_empty(env_root):
    env = Env(env_root, provider=FakeProvider(models=["llama-3", "gpt-5-mini"]))
    out = env.send("/%")
    assert out.ok
    with env.manager.read() as data:
        assert data.models == ["gpt-5-mini"]
    assert "gpt-5-mini" in out.message


def test_api_config_message_updates_registry(env_root):
    env = Env(env_root, provider=FakeProvider(models=["gpt-5"]))
    out = env.send("https://api.new/v1 sk-newkey1234")
    assert out.ok
    with env.manager.read() as data:
        assert (data.api_base, data.api_key) == ("https://api.new/v1", "sk-newkey1234")
        assert data.models == ["gpt-5"]


def test_bulk_clear(env_root):
    env = Env(env_root)
    _seed(env, ["pub"])
    _seed(env, ["mine"], private=True)
    env.manager.generating.try_start("Bot", False, "u9")

    assert env.send("-*").ok
    assert env.bot().public_history == []
    assert len(env.bot().private_histories["u1"]) == 1
    assert not env.manager.generating.is_generating("Bot", False, "u9")

    assert env.send("-*!").ok
    assert env.bot().private_histories == {}
    assert env.bot().generation_id == 2


def test_auto_fill_descriptions(env_root, monkeypatch):
    monkeypatch.setattr(settings, "describe_interval", 0)
    env = Env(env_root, provider=FakeProvider(reply="“翻译助手。”"))
    env.send("##Done(已有) gpt-4o x")
    out = env.send("##:gpt-5")
    assert out.ok
    assert env.bot().description == "翻译助手"
    assert env.manager.find("Done").description == "已有"
    assert env.provider.requests[0].model == "gpt-5"
    assert "sys" in env.provider.requests[0].messages[0].content


def test_persistence_failure_does_not_fail_command(env_root):
    env = Env(env_root)
    env.store.path.mkdir(parents=True, exist_ok=True)
    out = env.send("Bot:新的描述")
    assert out.ok
    assert env.bot().description == "新的描述"


class SequencedProvider(FakeProvider):
    """第 n 次调用等待第 n 个 gate，并回复 reply<n>。"""

    def __init__(self, gates):
        super().__init__()
        self.gates = gates

    def chat(self, req):
        self.requests.append(req)
        n = len(self.requests)
        self.gates[n - 1].wait(5)
        msg = ChatMessage(role="assistant", content=f"reply{n}")
        return ChatResult(model=req.model, choices=[ChatChoice(index=0, message=msg)])


def test_late_stopped_reply_does_not_release_newer_generation(env_root):
    gates = [threading.Event(), threading.Event()]
    env = Env(env_root, provider=SequencedProvider(gates))
    results = {}
    t1 = threading.Thread(target=lambda: results.setdefault("one", env.send("Bot one")))
    t2 = threading.Thread(target=lambda: results.setdefault("two", env.send("Bot two")))
    t1.start()
    try:
        assert _wait_until(lambda: len(env.provider.requests) == 1)
        assert env.send("Bot!").ok

        t2.start()
        assert _wait_until(lambda: len(env.provider.requests) == 2)

        gates[0].set()
        t1.join(5)
        assert results["one"].kind == "cancelled"
        assert env.manager.generating.is_generating("Bot", False, "u1")

        out = env.send("Bot three")
        assert out.kind == "busy"
    finally:
        for g in gates:
            g.set()
        t1.join(5)
        if t2.is_alive():
            t2.join(5)
    assert results["two"].ok and results["two"].message == "reply2"
    assert [m.content for m in env.bot().public_history] == ["one", "two", "reply2"]
    assert not env.manager.generating.is_generating("Bot", False, "u1")


def _html_client():
    class HtmlResp:
        status_code = 200
        text = "<html>not json</html>"

        def json(self):
            return json.loads(self.text)

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            return HtmlResp()

        def get(self, *a, **kw):
            return HtmlResp()

    return Client


def test_non_json_api_response_becomes_outcome(env_root, monkeypatch):
    monkeypatch.setattr("httpx.Client", _html_client())
    monkeypatch.setattr(settings, "describe_interval", 0)
    env = Env(env_root, provider=OpenAICompatClient("https://api.test/v1", "sk-test-key"))

    out = env.send("/%")
    assert out.kind == "provider_error"
    assert env.transport.texts[-1].startswith("❌ API错误: 获取失败")

    out = env.send("https://api.new/v1 sk-newkey1234")
    assert out.kind == "provider_error"

    out = env.send("##:")
    assert out.ok
    assert env.bot().description == ""

    out = env.send("Bot hello")
    assert out.kind == "provider_error"
    assert not env.manager.generating.is_generating("Bot", False, "u1")


def test_literal_create_on_empty_registry(env_root):
    env = Env(env_root, with_bot=False)
    out = env.send("##Bot(assistant) gpt-4o You are helpful")
    assert out.ok
    bot = env.bot()
    assert (bot.name, bot.description, bot.model, bot.system_prompt) == (
        "Bot",
        "assistant",
        "gpt-4o",
        "You are helpful",
    )
    assert bot.public_history == []
    assert bot.private_histories == {}
    assert bot.generation_id == 0
    snap = env.manager.generating.snapshot()
    assert snap.public == {} and snap.private == {}


def test_dispatcher_shutdown_saves_and_rejects_new_chats(env_root):
    env = Env(env_root)
    env.dispatcher.shutdown()
    reloaded = JsonRegistryStore(root=env_root).load(RegistryData())
    assert reloaded.find("Bot") is not None

    out = env.send("Bot hello")
    assert out.kind == "provider_error"
    assert not env.manager.generating.is_generating("Bot", False, "u1")


def test_service_shutdown_resets_default_dispatcher(env_root, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", str(env_root))
    monkeypatch.setattr(service, "_manager", None)
    monkeypatch.setattr(service, "_dispatcher", None)
    first = service.get_default_dispatcher(FakeTransport())
    assert service.get_default_dispatcher(FakeTransport()) is first

    service.shutdown()
    assert service._dispatcher is None and service._manager is None
    assert (env_root / "config.json").exists()
    assert service.get_default_dispatcher(FakeTransport()) is not first
    service.shutdown()
