"""View-model that keeps the UI in step with the backend.

The synchronizer owns the mirrored state, issues backend commands and applies
push events. It knows nothing about widgets: the window subscribes through the
``on_*`` callbacks and calls the coroutine methods in response to user input.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Coroutine, List, Optional, Set

from .backend import (
    EVENT_LOG_OUTPUT,
    EVENT_PROCESS_STARTED,
    EVENT_PROCESS_STOPPED,
    Backend,
    BackendError,
)
from .log_buffer import LogBuffer
from .state import (
    OP_INIT,
    OP_PROFILE,
    OP_PROXY,
    OP_SAVE,
    OP_START,
    OP_STOP,
    OP_SWITCH,
    Action,
    ControlStates,
    CurrentProfileChanged,
    MirrorState,
    OperationFinished,
    OperationStarted,
    ProcessObserved,
    ProxyObserved,
    Ready,
    Source,
    controls_for,
    reduce,
)
from .types import DRAFT_FIELDS, ROUTING_MODES, FormDraft, PushEvent, ServerProfile

logger = logging.getLogger(__name__)

_PROCESS_OPS = frozenset({OP_START, OP_STOP})


class StateSynchronizer:
    def __init__(
        self,
        backend: Backend,
        log: LogBuffer,
        on_state_changed: Optional[Callable[[MirrorState, ControlStates], None]] = None,
        on_profiles_changed: Optional[Callable[[List[ServerProfile], Optional[str]], None]] = None,
        on_draft_loaded: Optional[Callable[[FormDraft], None]] = None,
        on_selection_reverted: Optional[Callable[[Optional[str]], None]] = None,
        on_save_acknowledged: Optional[Callable[[bool], None]] = None,
        save_ack_seconds: float = 1.0,
        reconcile_seconds: Optional[float] = 2.0,
        shutdown_wait_seconds: float = 5.0,
    ):
        self.backend = backend
        self.log = log
        self.on_state_changed = on_state_changed
        self.on_profiles_changed = on_profiles_changed
        self.on_draft_loaded = on_draft_loaded
        self.on_selection_reverted = on_selection_reverted
        self.on_save_acknowledged = on_save_acknowledged
        self.save_ack_seconds = save_ack_seconds
        self.reconcile_seconds = reconcile_seconds
        self.shutdown_wait_seconds = shutdown_wait_seconds

        self._state = MirrorState()
        self.profiles: List[ServerProfile] = []
        # Last loaded or saved copy of the current profile; the draft edits it
        self.profile: Optional[ServerProfile] = None
        self.draft = FormDraft()
        self._saved_draft = FormDraft()

        self._save_lock = asyncio.Lock()
        # Notified whenever an operation finishes
        self._op_finished = asyncio.Condition()
        self._closing = False
        self._init_failed = False
        self._tasks: Set[asyncio.Task] = set()
        self._ack_handle: Optional[asyncio.TimerHandle] = None
        self._reconcile_handle: Optional[asyncio.TimerHandle] = None

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> MirrorState:
        return self._state

    @property
    def controls(self) -> ControlStates:
        return controls_for(self._state)

    @property
    def dirty(self) -> bool:
        return self.draft != self._saved_draft

    def dispatch(self, action: Action) -> MirrorState:
        self._state = reduce(self._state, action)
        if self.on_state_changed:
            self.on_state_changed(self._state, controls_for(self._state))
        return self._state

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        self.dispatch(OperationStarted(name))
        try:
            yield
        finally:
            self.dispatch(OperationFinished(name))
            async with self._op_finished:
                self._op_finished.notify_all()

    def _busy(self, *names: str) -> bool:
        return bool(self._state.pending & set(names))

    async def _wait_idle(self, *names: str) -> None:
        async with self._op_finished:
            await self._op_finished.wait_for(lambda: not self._busy(*names))

    def _error(self, text: str) -> None:
        logger.warning(text)
        self.log.error(text)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task failed", exc_info=task.exception())

    # -- initialization ----------------------------------------------------

    async def initialize(self) -> bool:
        if self._busy(OP_INIT):
            return False
        self.log.system("初始化中...")
        async with self._operation(OP_INIT):
            try:
                version = await self.backend.get_app_version()
                await self._load_profiles()
                running = await self.backend.is_process_running()
                proxy_enabled = await self.backend.get_proxy_status()
            except BackendError as e:
                self._error(f"初始化失败: {e}")
                self._init_failed = True
                self.dispatch(Ready(False))
                return False

            self.dispatch(ProcessObserved(running, Source.QUERY))
            if proxy_enabled and not running:
                self.log.system("检测到残留的系统代理设置，正在关闭")
                await self._teardown_stale_proxy()
            else:
                self.dispatch(ProxyObserved(proxy_enabled))
            self._init_failed = False
            self.dispatch(Ready(True))

        logger.info("backend ready, version %s", version)
        self.log.system("就绪")
        return True

    async def reconnect(self) -> bool:
        """Retry after a failed initialization; refresh the profile list otherwise."""
        if self._state.ready:
            return await self.refresh_profiles()
        self.log.system("正在重新连接...")
        return await self.initialize()

    async def _load_profiles(self) -> None:
        profiles = await self.backend.list_profiles()
        current_id = await self.backend.get_current_profile_id()
        profile = await self.backend.get_current_profile()
        if current_id is None and profile is not None:
            current_id = profile.id

        self.profiles = profiles
        self.dispatch(CurrentProfileChanged(current_id))
        if self.on_profiles_changed:
            self.on_profiles_changed(list(profiles), current_id)
        self._load_draft(profile)

    def _load_draft(self, profile: Optional[ServerProfile]) -> None:
        if self.dirty:
            self.log.system("未保存的修改已丢弃")
        self.profile = profile
        self.draft = FormDraft.from_profile(profile) if profile else FormDraft()
        self._saved_draft = replace(self.draft)
        if self.on_draft_loaded:
            self.on_draft_loaded(replace(self.draft))

    async def refresh_profiles(self) -> bool:
        if self._busy(OP_INIT, OP_PROFILE, OP_SWITCH, OP_SAVE):
            return False
        try:
            await self._load_profiles()
        except BackendError as e:
            self._error(f"刷新服务器列表失败: {e}")
            return False
        return True

    # -- draft -------------------------------------------------------------

    def update_draft(self, **fields: str) -> None:
        for key, value in fields.items():
            if key not in DRAFT_FIELDS:
                raise TypeError(f"not an editable field: {key}")
            setattr(self.draft, key, value)

    def select_routing_mode(self, mode: Optional[str]) -> None:
        if mode is not None and mode not in ROUTING_MODES:
            raise ValueError(f"unknown routing mode: {mode}")
        self.draft.routing_mode = mode

    # -- profiles ----------------------------------------------------------

    def _revert_selection(self) -> None:
        if self.on_selection_reverted:
            self.on_selection_reverted(self._state.current_server_id)

    def _editing_blocked(self) -> bool:
        if self._state.running or self._busy(*_PROCESS_OPS):
            self._error("请先停止当前连接")
            return True
        return self._busy(OP_PROFILE, OP_SWITCH)

    async def switch_profile(self, profile_id: str) -> bool:
        if self._state.running or self._busy(*_PROCESS_OPS):
            self._error("请先停止当前连接后再切换服务器")
            self._revert_selection()
            return False
        if profile_id == self._state.current_server_id:
            return True
        if self._busy(OP_SWITCH, OP_PROFILE):
            self._revert_selection()
            return False

        async with self._operation(OP_SWITCH):
            try:
                await self.backend.set_current_profile(profile_id)
            except BackendError as e:
                self._error(f"切换服务器失败: {e}")
                self._revert_selection()
                return False
            self.dispatch(CurrentProfileChanged(profile_id))

            try:
                profile = await self.backend.get_current_profile()
            except BackendError as e:
                self._error(f"加载服务器配置失败: {e}")
                return False
            self._load_draft(profile)
        return True

    async def add_profile(self, name: str) -> Optional[str]:
        name = name.strip()
        if not name:
            self._error("名称不能为空")
            return None
        if self._editing_blocked():
            return None
        async with self._operation(OP_PROFILE):
            try:
                new_id = await self.backend.add_profile(name)
                await self._load_profiles()
            except BackendError as e:
                self._error(f"添加服务器失败: {e}")
                return None
        self.log.system(f"已添加服务器: {name}")
        return new_id

    async def rename_profile(self, new_name: str) -> bool:
        new_name = new_name.strip()
        current_id = self._state.current_server_id
        if current_id is None:
            self._error("没有选择服务器")
            return False
        if not new_name:
            self._error("名称不能为空")
            return False
        if self._editing_blocked():
            return False
        async with self._operation(OP_PROFILE):
            try:
                await self.backend.rename_profile(current_id, new_name)
                await self._load_profiles()
            except BackendError as e:
                self._error(f"重命名失败: {e}")
                return False
        self.log.system(f"已重命名为: {new_name}")
        return True

    async def delete_profile(self) -> bool:
        current_id = self._state.current_server_id
        if current_id is None or self._editing_blocked():
            return False
        async with self._operation(OP_PROFILE):
            try:
                await self.backend.delete_profile(current_id)
                await self._load_profiles()
            except BackendError as e:
                self._error(f"删除服务器失败: {e}")
                return False
        self.log.system("已删除服务器")
        return True

    # -- save --------------------------------------------------------------

    async def save(self) -> bool:
        # Saves run one at a time, in call order
        async with self._save_lock:
            async with self._operation(OP_SAVE):
                return await self._save_locked()

    async def _save_locked(self) -> bool:
        draft = replace(self.draft)
        try:
            fresh = await self.backend.get_current_profile()
            if fresh is None:
                self._error("保存失败: 没有选择服务器")
                return False
            if self.profile is not None and fresh.id != self.profile.id:
                self._error("保存失败: 当前服务器已变更，请重新加载")
                return False
            merged = draft.merged_onto(fresh)
            await self.backend.update_profile(merged)
        except BackendError as e:
            self._error(f"保存失败: {e}")
            return False

        self.profile = merged
        self._saved_draft = draft
        self.profiles = [merged if p.id == merged.id else p for p in self.profiles]
        self.log.system("配置已保存")
        self._acknowledge_save()
        return True

    def _acknowledge_save(self) -> None:
        if self.on_save_acknowledged:
            self.on_save_acknowledged(True)
        if self._ack_handle is not None:
            self._ack_handle.cancel()
        loop = asyncio.get_running_loop()
        self._ack_handle = loop.call_later(self.save_ack_seconds, self._end_save_ack)

    def _end_save_ack(self) -> None:
        self._ack_handle = None
        if self.on_save_acknowledged:
            self.on_save_acknowledged(False)

    # -- process -----------------------------------------------------------

    async def start(self) -> bool:
        if self._closing or self._state.running or self._busy(*_PROCESS_OPS):
            return False
        async with self._operation(OP_START):
            if not await self.save():
                self._error("配置未保存，已取消启动")
                return False
            try:
                msg = await self.backend.start_process()
            except BackendError as e:
                self._error(f"启动失败: {e}")
                return False
            if msg:
                self.log.system(msg)
            if self._closing:
                # Quit was requested while the process was starting
                await self._stop_process()
                return False
            self.dispatch(ProcessObserved(True, Source.HINT))
            self._schedule_reconcile()
        return True

    async def stop(self, force: bool = False) -> bool:
        """Tear down the system proxy, then stop the process.

        A failed proxy teardown aborts the stop unless ``force`` is set. If the
        stop command fails after the proxy was torn down, the proxy is
        re-enabled so the pair stays consistent.
        """
        if self._busy(*_PROCESS_OPS, OP_PROXY):
            return False
        async with self._operation(OP_STOP):
            proxy_torn_down = False
            if self._state.proxy_enabled:
                try:
                    msg = await self.backend.set_system_proxy(False)
                except BackendError as e:
                    if not force:
                        self._error(f"关闭系统代理失败，已取消停止: {e}")
                        return False
                    self._error(f"关闭系统代理失败，仍将停止进程: {e}")
                else:
                    if msg:
                        self.log.system(msg)
                    self.dispatch(ProxyObserved(False))
                    proxy_torn_down = True

            try:
                msg = await self.backend.stop_process()
            except BackendError as e:
                self._error(f"停止失败: {e}")
                if proxy_torn_down:
                    await self._restore_proxy()
                return False
            if msg:
                self.log.system(msg)
            self.dispatch(ProcessObserved(False, Source.HINT))
            self._schedule_reconcile()
        return True

    async def _restore_proxy(self) -> None:
        try:
            msg = await self.backend.set_system_proxy(True)
        except BackendError as e:
            self._error(f"恢复系统代理失败: {e}")
            return
        if msg:
            self.log.system(msg)
        self.dispatch(ProxyObserved(True))
        self.log.system("已恢复系统代理")

    async def _teardown_stale_proxy(self) -> None:
        try:
            msg = await self.backend.set_system_proxy(False)
        except BackendError as e:
            self._error(f"关闭残留系统代理失败: {e}")
            return
        if msg:
            self.log.system(msg)
        self.dispatch(ProxyObserved(False))

    async def toggle_proxy(self) -> bool:
        if not self._state.running:
            self._error("请先启动连接")
            return False
        if self._closing or self._busy(OP_PROXY, *_PROCESS_OPS):
            return False
        target = not self._state.proxy_enabled
        async with self._operation(OP_PROXY):
            try:
                msg = await self.backend.set_system_proxy(target)
            except BackendError as e:
                self._error(f"代理设置失败: {e}")
                return False
            if msg:
                self.log.system(msg)
            if target and not self._state.running:
                # The process went away while the command was in flight
                await self._teardown_stale_proxy()
                return False
            self.dispatch(ProxyObserved(target))
        return True

    async def shutdown(self) -> None:
        """Switch the system proxy off and stop the process before quitting.

        Both commands are always sent, whatever the mirror shows, after any
        in-flight start, stop or proxy change has finished or
        ``shutdown_wait_seconds`` has passed. A start that completes later
        is stopped again by ``start`` itself.
        """
        self._closing = True
        for handle in (self._ack_handle, self._reconcile_handle):
            if handle is not None:
                handle.cancel()
        self._ack_handle = self._reconcile_handle = None

        in_flight = (*_PROCESS_OPS, OP_PROXY)
        if self._busy(*in_flight):
            self.log.system("等待当前操作完成...")
            try:
                await asyncio.wait_for(self._wait_idle(*in_flight), self.shutdown_wait_seconds)
            except asyncio.TimeoutError:
                logger.warning("quitting with operations in flight: %s", sorted(self._state.pending))

        try:
            msg = await self.backend.set_system_proxy(False)
        except BackendError as e:
            self._error(f"关闭系统代理失败: {e}")
        else:
            if msg:
                self.log.system(msg)
            self.dispatch(ProxyObserved(False))
        await self._stop_process()

    async def _stop_process(self) -> bool:
        try:
            msg = await self.backend.stop_process()
        except BackendError as e:
            self._error(f"停止失败: {e}")
            return False
        if msg:
            self.log.system(msg)
        self.dispatch(ProcessObserved(False, Source.HINT))
        return True

    # -- reconciliation ----------------------------------------------------

    def _schedule_reconcile(self) -> None:
        if self._closing or not self.reconcile_seconds:
            return
        if self._reconcile_handle is not None:
            self._reconcile_handle.cancel()
        epoch = self._state.epoch
        loop = asyncio.get_running_loop()
        self._reconcile_handle = loop.call_later(
            self.reconcile_seconds, lambda: self._spawn(self.reconcile(epoch))
        )

    async def reconcile(self, since_epoch: Optional[int] = None) -> bool:
        """Query the backend and settle the mirror, unless a push event already did."""
        self._reconcile_handle = None
        epoch = self._state.epoch if since_epoch is None else since_epoch
        if self._state.epoch != epoch or self._busy(*_PROCESS_OPS):
            return False
        try:
            running = await self.backend.is_process_running()
            proxy_enabled = await self.backend.get_proxy_status() if running else False
        except BackendError as e:
            self._error(f"查询进程状态失败: {e}")
            return False
        if self._state.epoch != epoch or self._busy(*_PROCESS_OPS):
            return False

        if running != self._state.running:
            logger.warning("process state drifted, backend reports running=%s", running)
        proxy_was_enabled = self._state.proxy_enabled
        self.dispatch(ProcessObserved(running, Source.QUERY))
        self.dispatch(ProxyObserved(proxy_enabled))
        if proxy_was_enabled and not running and not self._busy(OP_PROXY):
            self._spawn(self._teardown_stale_proxy())
        return True

    # -- push events -------------------------------------------------------

    def apply_event(self, event: PushEvent) -> None:
        if event.name == EVENT_LOG_OUTPUT:
            self.log.append(str(event.payload if event.payload is not None else ""))
        elif event.name == EVENT_PROCESS_STARTED:
            self.dispatch(ProcessObserved(True, Source.PUSH))
            self.log.system("进程已启动")
        elif event.name == EVENT_PROCESS_STOPPED:
            proxy_was_enabled = self._state.proxy_enabled
            self.dispatch(ProcessObserved(False, Source.PUSH))
            self.log.system("进程已停止")
            if proxy_was_enabled and not self._busy(OP_STOP):
                self._spawn(self._teardown_stale_proxy())
        else:
            logger.debug("ignoring unknown event %s", event.name)

    async def pump_events(self) -> None:
        async for event in self.backend.events():
            if self._init_failed and not self._busy(OP_INIT):
                # The backend is answering again
                self._init_failed = False
                self._spawn(self.initialize())
            self.apply_event(event)

    def clear_log(self) -> None:
        self.log.clear()
