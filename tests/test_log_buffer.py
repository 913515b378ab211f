from __future__ import annotations

import pytest

from echgui.log_buffer import LogBuffer, LogLevel


def test_evicts_oldest_past_limit() -> None:
    log = LogBuffer()
    for i in range(501):
        log.append(f"line {i}")
    assert len(log) == 500
    lines = log.lines()
    assert lines[0] == "line 1"
    assert lines[-1] == "line 500"


def test_levels_render_with_tags() -> None:
    log = LogBuffer()
    log.system("就绪")
    log.error("启动失败: boom")
    log.append("raw output\n")
    assert log.lines() == ["[系统] 就绪", "[错误] 启动失败: boom", "raw output"]
    assert [e.level for e in log] == [LogLevel.SYSTEM, LogLevel.ERROR, LogLevel.OUTPUT]


def test_listeners_and_clear() -> None:
    seen = []
    cleared = []
    log = LogBuffer(max_lines=2, on_append=seen.append, on_clear=lambda: cleared.append(True))
    log.append("a")
    log.append("b")
    log.append("c")
    assert [e.text for e in seen] == ["a", "b", "c"]
    assert log.lines() == ["b", "c"]
    log.clear()
    assert len(log) == 0
    assert cleared == [True]


def test_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        LogBuffer(max_lines=0)
