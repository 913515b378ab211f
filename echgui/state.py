"""Mirror of backend-owned state and the single reducer that mutates it.

Command results, push events and reconciliation queries are all turned into
actions and fed through :func:`reduce`, so there is exactly one path that
changes the mirrored process/proxy state.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import FrozenSet, Optional, Union

from .types import ProcessState, ProxyState

# Operation names tracked in MirrorState.pending
OP_INIT = "init"
OP_START = "start"
OP_STOP = "stop"
OP_PROXY = "proxy"
OP_SAVE = "save"
OP_SWITCH = "switch"
OP_PROFILE = "profile"

_PROCESS_OPS = frozenset({OP_START, OP_STOP})
_EDIT_OPS = frozenset({OP_SWITCH, OP_PROFILE, OP_INIT})


class Source(Enum):
    HINT = "hint"
    PUSH = "push"
    QUERY = "query"


@dataclass(frozen=True)
class MirrorState:
    process: ProcessState = ProcessState.STOPPED
    proxy: ProxyState = ProxyState.DISABLED
    current_server_id: Optional[str] = None
    ready: bool = False
    pending: FrozenSet[str] = frozenset()
    # Bumped by every authoritative (push/query) process observation
    epoch: int = 0

    @property
    def running(self) -> bool:
        return self.process is ProcessState.RUNNING

    @property
    def proxy_enabled(self) -> bool:
        return self.proxy is ProxyState.ENABLED


@dataclass(frozen=True)
class ProcessObserved:
    running: bool
    source: Source = Source.HINT


@dataclass(frozen=True)
class ProxyObserved:
    enabled: bool


@dataclass(frozen=True)
class CurrentProfileChanged:
    server_id: Optional[str]


@dataclass(frozen=True)
class Ready:
    ok: bool


@dataclass(frozen=True)
class OperationStarted:
    name: str


@dataclass(frozen=True)
class OperationFinished:
    name: str


Action = Union[
    ProcessObserved,
    ProxyObserved,
    CurrentProfileChanged,
    Ready,
    OperationStarted,
    OperationFinished,
]


def reduce(state: MirrorState, action: Action) -> MirrorState:
    if isinstance(action, ProcessObserved):
        process = ProcessState.RUNNING if action.running else ProcessState.STOPPED
        epoch = state.epoch
        if action.source is not Source.HINT:
            epoch += 1
        proxy = state.proxy if action.running else ProxyState.DISABLED
        return replace(state, process=process, proxy=proxy, epoch=epoch)

    if isinstance(action, ProxyObserved):
        if action.enabled and not state.running:
            return state
        proxy = ProxyState.ENABLED if action.enabled else ProxyState.DISABLED
        return replace(state, proxy=proxy)

    if isinstance(action, CurrentProfileChanged):
        return replace(state, current_server_id=action.server_id)

    if isinstance(action, Ready):
        return replace(state, ready=action.ok)

    if isinstance(action, OperationStarted):
        return replace(state, pending=state.pending | {action.name})

    if isinstance(action, OperationFinished):
        return replace(state, pending=state.pending - {action.name})

    raise TypeError(f"unknown action: {action!r}")


@dataclass(frozen=True)
class ControlStates:
    start: bool = False
    stop: bool = False
    proxy: bool = False
    save: bool = False
    selector: bool = False
    inputs: bool = False
    add: bool = False
    rename: bool = False
    delete: bool = False


def controls_for(state: MirrorState) -> ControlStates:
    """The control-enablement rule, re-applied after every state change."""
    if not state.ready:
        return ControlStates()

    transitioning = bool(state.pending & _PROCESS_OPS)
    if state.running:
        return ControlStates(
            stop=not transitioning and OP_PROXY not in state.pending,
            proxy=not transitioning and OP_PROXY not in state.pending,
        )

    editing = not transitioning and not (state.pending & _EDIT_OPS)
    return ControlStates(
        start=not transitioning,
        save=editing and OP_SAVE not in state.pending,
        selector=editing,
        inputs=not transitioning,
        add=editing,
        rename=editing,
        delete=editing,
    )
