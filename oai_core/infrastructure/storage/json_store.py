import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from oai_core.config.settings import settings
from oai_core.domain.exceptions import PersistenceError
from oai_core.domain.persona import RegistryData
from oai_core.infrastructure.logging.logger import logger


class JsonRegistryStore:
    """以单个 JSON 文件保存整个注册表快照。"""

    def __init__(self, root: str | Path | None = None, filename: str = "config.json"):
        self._root = Path(root or settings.data_dir).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / filename

    @property
    def root(self) -> Path:
        return self._root

    @property
    def path(self) -> Path:
        return self._path

    def load(self, default: RegistryData) -> RegistryData:
        """读取快照；文件不存在或内容损坏时返回 default。

        损坏的文件先另存为 ``<stem>.corrupt-<时间>.json``，避免下一次保存把它覆盖。
        """
        if not self._path.exists():
            return default
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("registry snapshot is not a JSON object")
            loaded = RegistryData.from_dict(data)
        except Exception as e:
            self._keep_corrupt(e)
            return default
        if not loaded.default_model:
            loaded.default_model = default.default_model
        if not loaded.default_prompt:
            loaded.default_prompt = default.default_prompt
        return loaded

    def save(self, data: RegistryData) -> None:
        tmp_path = self._root / f"{self._path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except Exception as e:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def _keep_corrupt(self, err: Exception) -> None:
        backup = self._root / f"{self._path.stem}.corrupt-{datetime.now().strftime('%Y%m%d%H%M%S')}.json"
        try:
            shutil.copy2(self._path, backup)
        except OSError as e:
            backup = None
            logger.error("Registry backup failed", extra={"extra": {"path": str(self._path), "error": str(e)}})
        logger.warning(
            "Registry snapshot unreadable, starting from defaults",
            extra={"extra": {"path": str(self._path), "backup": str(backup) if backup else None, "error": str(err)}},
        )
