"""注册表管理器。

PersonaManager 持有进程内唯一的 RegistryData，读操作共享锁、写操作独占锁；
持锁期间只做内存修改与落盘，网络调用必须在释放锁之后进行。
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from oai_core.agents.generation import GenerationTracker
from oai_core.config.settings import settings
from oai_core.domain.exceptions import PersistenceError, ValidationError
from oai_core.domain.persona import Persona, RegistryData
from oai_core.infrastructure.locks import RWLock
from oai_core.infrastructure.logging.logger import logger
from oai_core.infrastructure.storage.json_store import JsonRegistryStore
from oai_core.providers import ProviderFactory, create_provider
from oai_core.providers.base import ProviderClient
from oai_core.providers.registry import filter_models, resolve_model


class PersonaManager:
    def __init__(
        self,
        store: JsonRegistryStore,
        provider_factory: ProviderFactory = create_provider,
        tracker: Optional[GenerationTracker] = None,
    ):
        self._store = store
        self._provider_factory = provider_factory
        default = RegistryData(
            api_base=settings.api_base,
            api_key=settings.api_key,
            default_model=settings.default_model,
            default_prompt=settings.default_prompt,
        )
        self._data = store.load(default)
        self._lock = RWLock()
        self.generating = tracker or GenerationTracker()

    @property
    def store(self) -> JsonRegistryStore:
        return self._store

    @contextmanager
    def read(self) -> Iterator[RegistryData]:
        with self._lock.read():
            yield self._data

    @contextmanager
    def write(self) -> Iterator[RegistryData]:
        with self._lock.write():
            yield self._data

    def save(self, data: RegistryData) -> None:
        """尽力落盘：失败只记日志，不影响触发它的指令。

        调用方需持有写锁（或读锁），保证序列化的是一致快照。
        """
        try:
            self._store.save(data)
        except PersistenceError as e:
            self._log(logging.WARNING, "Registry save failed", error=e.message, path=str(self._store.path))

    def persona_names(self) -> List[str]:
        with self.read() as data:
            return data.names()

    def find(self, name: str) -> Optional[Persona]:
        with self.read() as data:
            return data.find(name)

    def resolve_model(self, ref: str) -> Optional[str]:
        with self.read() as data:
            models = list(data.models)
        return resolve_model(ref, models)

    def provider(self) -> ProviderClient:
        with self.read() as data:
            base, key = data.api_base, data.api_key
        return self.provider_for(base, key)

    def provider_for(self, api_base: str, api_key: str) -> ProviderClient:
        if not api_base:
            raise ValidationError(code="MISSING_API_CONFIG", message="API 未配置")
        return self._provider_factory(api_base, api_key)

    def fetch_models(self) -> List[str]:
        """从接口拉取模型列表，过滤后写回注册表。"""
        provider = self.provider()
        models = sorted(provider.list_models())
        final = filter_models(models)
        with self.write() as data:
            data.models = list(final)
            self.save(data)
        self._log(logging.INFO, "Fetched models", total=len(models), kept=len(final))
        return final

    def shutdown(self) -> None:
        with self.read() as data:
            self.save(data)

    def _log(self, level: int, message: str, **extra: Any) -> None:
        payload: Dict[str, Any] = dict(extra)
        logger.log(level, message, extra={"extra": payload})
