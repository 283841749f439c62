"""进行中的生成请求跟踪。

同一 (智能体, 范围, 用户) 键同时最多只有一个生成请求：
公有范围按智能体区分，私有范围再按用户区分。
状态只存在于内存中，进程重启即清空。

try_start 成功时返回占用令牌；请求结束时凭令牌释放，
键已被停止/清空释放并重新占用后，旧请求不会误释放新请求。
"""

import itertools
from dataclasses import dataclass, field
from typing import Dict, Optional

from oai_core.infrastructure.locks import RWLock


@dataclass
class GenerationState:
    """键 → 占用令牌。"""

    public: Dict[str, int] = field(default_factory=dict)
    private: Dict[str, Dict[str, int]] = field(default_factory=dict)


class GenerationTracker:
    def __init__(self) -> None:
        self._state = GenerationState()
        self._lock = RWLock()
        self._tokens = itertools.count(1)

    def is_generating(self, agent: str, private: bool, uid: str) -> bool:
        with self._lock.read():
            if private:
                return uid in self._state.private.get(agent, {})
            return agent in self._state.public

    def try_start(self, agent: str, private: bool, uid: str) -> Optional[int]:
        """原子地检查并标记，返回占用令牌；已被占用时返回 None 且不做任何修改。"""
        with self._lock.write():
            if private:
                users = self._state.private.setdefault(agent, {})
                if uid in users:
                    return None
                token = next(self._tokens)
                users[uid] = token
            else:
                if agent in self._state.public:
                    return None
                token = next(self._tokens)
                self._state.public[agent] = token
            return token

    def finish(self, agent: str, private: bool, uid: str, token: Optional[int] = None) -> None:
        """释放键（幂等）。

        给出 token 时只释放仍由该令牌占用的键；不给 token 表示无条件释放（停止/清空）。
        """
        with self._lock.write():
            if private:
                users = self._state.private.get(agent)
                if users is None or uid not in users:
                    return
                if token is not None and users[uid] != token:
                    return
                del users[uid]
                if not users:
                    del self._state.private[agent]
            else:
                held = self._state.public.get(agent)
                if held is None or (token is not None and held != token):
                    return
                del self._state.public[agent]

    def clear_public(self) -> None:
        with self._lock.write():
            self._state.public.clear()

    def clear_all(self) -> None:
        with self._lock.write():
            self._state.public.clear()
            self._state.private.clear()

    def snapshot(self) -> GenerationState:
        with self._lock.read():
            return GenerationState(
                public=dict(self._state.public),
                private={k: dict(v) for k, v in self._state.private.items()},
            )
