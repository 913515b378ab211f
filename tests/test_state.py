from __future__ import annotations

import pytest

from echgui.state import (
    OP_PROXY,
    OP_SAVE,
    OP_START,
    OP_SWITCH,
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
from echgui.types import ProcessState, ProxyState


def _running_with_proxy() -> MirrorState:
    state = reduce(MirrorState(), Ready(True))
    state = reduce(state, ProcessObserved(True, Source.QUERY))
    return reduce(state, ProxyObserved(True))


def test_process_observation_is_idempotent() -> None:
    state = reduce(MirrorState(), ProcessObserved(True))
    again = reduce(state, ProcessObserved(True))
    assert again == state
    assert again.process is ProcessState.RUNNING


def test_stopping_forces_proxy_disabled() -> None:
    state = reduce(_running_with_proxy(), ProcessObserved(False, Source.PUSH))
    assert state.process is ProcessState.STOPPED
    assert state.proxy is ProxyState.DISABLED


def test_proxy_cannot_be_enabled_while_stopped() -> None:
    state = reduce(MirrorState(), ProxyObserved(True))
    assert state.proxy is ProxyState.DISABLED


def test_only_authoritative_sources_bump_epoch() -> None:
    state = reduce(MirrorState(), ProcessObserved(True, Source.HINT))
    assert state.epoch == 0
    state = reduce(state, ProcessObserved(True, Source.PUSH))
    state = reduce(state, ProcessObserved(False, Source.QUERY))
    assert state.epoch == 2


def test_pending_operations_tracked() -> None:
    state = reduce(MirrorState(), OperationStarted(OP_SAVE))
    state = reduce(state, OperationStarted(OP_START))
    assert state.pending == {OP_SAVE, OP_START}
    state = reduce(state, OperationFinished(OP_SAVE))
    assert state.pending == {OP_START}


def test_current_profile_changed() -> None:
    state = reduce(MirrorState(), CurrentProfileChanged("office"))
    assert state.current_server_id == "office"


def test_unknown_action_rejected() -> None:
    with pytest.raises(TypeError):
        reduce(MirrorState(), object())  # type: ignore[arg-type]


def test_controls_disabled_until_ready() -> None:
    assert controls_for(MirrorState()) == ControlStates()
    assert controls_for(MirrorState(process=ProcessState.RUNNING)) == ControlStates()


def test_start_and_stop_mutually_exclusive() -> None:
    stopped = controls_for(reduce(MirrorState(), Ready(True)))
    running = controls_for(_running_with_proxy())
    assert (stopped.start, stopped.stop) == (True, False)
    assert (running.start, running.stop) == (False, True)


def test_running_locks_every_editing_control() -> None:
    controls = controls_for(_running_with_proxy())
    assert controls == ControlStates(stop=True, proxy=True)


def test_control_disabled_while_its_operation_is_in_flight() -> None:
    state = reduce(_running_with_proxy(), OperationStarted(OP_PROXY))
    controls = controls_for(state)
    assert controls.proxy is False
    assert controls.stop is False

    idle = reduce(MirrorState(), Ready(True))
    switching = controls_for(reduce(idle, OperationStarted(OP_SWITCH)))
    assert switching.selector is False
    assert switching.start is True

    starting = controls_for(reduce(idle, OperationStarted(OP_START)))
    assert starting == ControlStates()
