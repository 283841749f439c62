import tempfile
from pathlib import Path

import pytest

from oai_core.domain.exceptions import PersistenceError
from oai_core.domain.models import ChatMessage
from oai_core.domain.persona import Persona, RegistryData
from oai_core.infrastructure.storage.json_store import JsonRegistryStore


def _default():
    return RegistryData(default_model="gpt-4o", default_prompt="You are a helpful assistant.")


def test_json_store_save_and_load():
    with tempfile.TemporaryDirectory() as d:
        store = JsonRegistryStore(root=Path(d) / ".storage")
        data = _default()
        data.api_base = "https://api.test/v1"
        p = Persona(name="Bot", model="gpt-4o", system_prompt="sys", description="测试")
        p.public_history.append(ChatMessage(role="user", content="你好", images=["http://x/a.png"]))
        p.private_histories["u1"] = [ChatMessage(role="assistant", content="hi")]
        p.generation_id = 3
        data.agents.append(p)
        store.save(data)

        loaded = JsonRegistryStore(root=Path(d) / ".storage").load(_default())
        assert loaded.api_base == "https://api.test/v1"
        bot = loaded.find("Bot")
        assert bot.description == "测试"
        assert bot.public_history[0].images == ["http://x/a.png"]
        assert bot.private_histories["u1"][0].content == "hi"
        assert bot.generation_id == 3
        assert not list(store.root.glob("*.tmp"))


def test_json_store_missing_or_corrupt_file_returns_default():
    with tempfile.TemporaryDirectory() as d:
        store = JsonRegistryStore(root=d)
        default = _default()
        assert store.load(default) is default

        store.path.write_text("{not json", encoding="utf-8")
        assert store.load(default) is default

        store.path.write_text("[1, 2]", encoding="utf-8")
        assert store.load(default) is default


def test_json_store_corrupt_file_is_backed_up_and_logged(caplog):
    with tempfile.TemporaryDirectory() as d:
        store = JsonRegistryStore(root=d)
        # 缺少 name 的智能体条目同样视为损坏
        original = '{"agents": [{"model": "gpt-4o"}]}'
        store.path.write_text(original, encoding="utf-8")
        default = _default()

        assert store.load(default) is default
        backups = list(store.root.glob("config.corrupt-*.json"))
        assert len(backups) == 1
        assert backups[0].read_text(encoding="utf-8") == original
        assert "Registry snapshot unreadable" in caplog.text

        store.save(default)
        assert backups[0].read_text(encoding="utf-8") == original


def test_json_store_fills_empty_defaults():
    with tempfile.TemporaryDirectory() as d:
        store = JsonRegistryStore(root=d)
        store.path.write_text('{"api_base": "https://a", "default_model": ""}', encoding="utf-8")
        loaded = store.load(_default())
        assert loaded.api_base == "https://a"
        assert loaded.default_model == "gpt-4o"
        assert loaded.default_prompt == "You are a helpful assistant."


def test_json_store_write_failure_raises_persistence_error():
    with tempfile.TemporaryDirectory() as d:
        store = JsonRegistryStore(root=d)
        store.path.mkdir()
        with pytest.raises(PersistenceError):
            store.save(_default())
        assert not list(store.root.glob("*.tmp"))
