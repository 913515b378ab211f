from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from echgui.backend import Backend, BackendError
from echgui.log_buffer import LogBuffer
from echgui.synchronizer import StateSynchronizer
from echgui.types import PushEvent, ServerProfile

HOME = {
    "id": "home",
    "name": "家里",
    "server": "home.example.com:443",
    "listen": "127.0.0.1:30000",
    "token": "secret",
    "ip": "saas.sin.fan",
    "dns": "dns.alidns.com/dns-query",
    "ech": "cloudflare-ech.com",
    "routing_mode": "global",
    "remark": "kept by the backend",
}
OFFICE = {
    "id": "office",
    "name": "公司",
    "server": "office.example.com:443",
    "listen": "127.0.0.1:30001",
}


class FakeBackend(Backend):
    """In-memory backend recording every command in ``calls``.

    ``failures`` maps a command name to the error it raises; ``gates`` maps a
    command name to an event it waits on before answering.
    """

    def __init__(self, profiles: Optional[List[Dict[str, Any]]] = None, running: bool = False, proxy: bool = False):
        items = profiles if profiles is not None else [HOME, OFFICE]
        self.store: Dict[str, Dict[str, Any]] = {p["id"]: dict(p) for p in items}
        self.current_id: Optional[str] = items[0]["id"] if items else None
        self.running = running
        self.proxy = proxy
        self.calls: List[str] = []
        self.updates: List[Dict[str, Any]] = []
        self.failures: Dict[str, str] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self._events: Optional[asyncio.Queue] = None
        self._next_id = 1

    async def _call(self, name: str) -> None:
        self.calls.append(name)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if name in self.failures:
            raise BackendError(self.failures[name])

    async def list_profiles(self) -> List[ServerProfile]:
        await self._call("list_profiles")
        return [ServerProfile.from_dict(p) for p in self.store.values()]

    async def get_current_profile_id(self) -> Optional[str]:
        await self._call("get_current_profile_id")
        return self.current_id

    async def get_current_profile(self) -> Optional[ServerProfile]:
        await self._call("get_current_profile")
        if self.current_id is None:
            return None
        return ServerProfile.from_dict(self.store[self.current_id])

    async def set_current_profile(self, profile_id: str) -> None:
        await self._call("set_current_profile")
        if profile_id not in self.store:
            raise BackendError("服务器不存在")
        self.current_id = profile_id

    async def add_profile(self, name: str) -> str:
        await self._call("add_profile")
        new_id = f"new-{self._next_id}"
        self._next_id += 1
        self.store[new_id] = {"id": new_id, "name": name}
        self.current_id = new_id
        return new_id

    async def rename_profile(self, profile_id: str, new_name: str) -> None:
        await self._call("rename_profile")
        self.store[profile_id]["name"] = new_name

    async def delete_profile(self, profile_id: str) -> None:
        await self._call("delete_profile")
        if len(self.store) <= 1:
            raise BackendError("至少需要保留一个服务器配置")
        del self.store[profile_id]
        if self.current_id == profile_id:
            self.current_id = next(iter(self.store))

    async def update_profile(self, profile: ServerProfile) -> None:
        await self._call("update_profile")
        data = profile.to_dict()
        self.updates.append(data)
        self.store[profile.id] = data

    async def start_process(self) -> str:
        await self._call("start_process")
        self.running = True
        return "已启动服务器"

    async def stop_process(self) -> str:
        await self._call("stop_process")
        self.running = False
        return "进程已停止"

    async def is_process_running(self) -> bool:
        await self._call("is_process_running")
        return self.running

    async def set_system_proxy(self, enabled: bool) -> str:
        await self._call(f"set_system_proxy:{enabled}")
        self.proxy = enabled
        return "系统代理已开启" if enabled else "系统代理已关闭"

    async def get_proxy_status(self) -> bool:
        await self._call("get_proxy_status")
        return self.proxy

    async def get_app_version(self) -> str:
        await self._call("get_app_version")
        return "0.1.0"

    def push(self, name: str, payload: Any = None) -> None:
        if self._events is None:
            self._events = asyncio.Queue()
        self._events.put_nowait(PushEvent(name, payload))

    async def events(self) -> AsyncIterator[PushEvent]:
        if self._events is None:
            self._events = asyncio.Queue()
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if self._events is None:
            self._events = asyncio.Queue()
        self._events.put_nowait(None)


class Recorder:
    def __init__(self) -> None:
        self.states: List[Any] = []
        self.reverted: List[Optional[str]] = []
        self.drafts: List[Any] = []
        self.acks: List[bool] = []
        self.profiles: List[Any] = []


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_sync(recorder: Recorder):
    def _make(backend: FakeBackend, **kwargs: Any) -> StateSynchronizer:
        kwargs.setdefault("reconcile_seconds", None)
        kwargs.setdefault("save_ack_seconds", 0.01)
        return StateSynchronizer(
            backend,
            LogBuffer(),
            on_state_changed=lambda state, controls: recorder.states.append((state, controls)),
            on_profiles_changed=lambda profiles, current: recorder.profiles.append((profiles, current)),
            on_draft_loaded=recorder.drafts.append,
            on_selection_reverted=recorder.reverted.append,
            on_save_acknowledged=recorder.acks.append,
            **kwargs,
        )

    return _make


@pytest.fixture
def sync(backend: FakeBackend, make_sync) -> StateSynchronizer:
    return make_sync(backend)
