"""ListenerRegistry / ProcessSignals 测试。

测试覆盖：
- 每个事件支持多个处理器
- 注册表只移除自己的注册
- 首个/最后一个处理器安装/卸载底层钩子
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from unittest import mock

import pytest

from run_until.runtime.listeners import ListenerRegistry, ProcessSignals


class FakeSource:
    """最小事件源。"""

    def __init__(self) -> None:
        self.handlers: dict[str, list] = {}

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        handlers = self.handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False


class TestListenerRegistry:
    """ListenerRegistry 测试。"""

    def test_add_registers_on_source(self):
        source = FakeSource()
        registry = ListenerRegistry()
        handler = mock.MagicMock()

        registry.add(source, "exit", handler)

        assert source.handlers["exit"] == [handler]
        assert len(registry) == 1
        reg = registry.registrations()[0]
        assert (reg.source, reg.event, reg.handler) == (source, "exit", handler)

    def test_clear_removes_only_own_registrations(self):
        """清理不影响其他注册表或外部代码的处理器。"""
        source = FakeSource()
        ours = ListenerRegistry()
        theirs = ListenerRegistry()
        unrelated = mock.MagicMock(name="unrelated")
        source.on("SIGINT", unrelated)

        our_handler = mock.MagicMock(name="ours")
        their_handler = mock.MagicMock(name="theirs")
        ours.add(source, "SIGINT", our_handler)
        theirs.add(source, "SIGINT", their_handler)

        assert ours.clear() == 1
        assert source.handlers["SIGINT"] == [unrelated, their_handler]
        assert len(ours) == 0
        assert len(theirs) == 1

    def test_clear_is_idempotent(self):
        source = FakeSource()
        registry = ListenerRegistry()
        registry.add(source, "exit", mock.MagicMock())

        assert registry.clear() == 1
        assert registry.clear() == 0

    def test_clear_across_sources(self):
        a, b = FakeSource(), FakeSource()
        registry = ListenerRegistry()
        registry.add(a, "stdout", mock.MagicMock())
        registry.add(b, "exit", mock.MagicMock())

        registry.clear()

        assert a.handlers["stdout"] == []
        assert b.handlers["exit"] == []


class TestProcessSignalsExit:
    """exit 事件测试。"""

    def test_first_and_last_handler_toggle_atexit(self):
        signals = ProcessSignals()
        first, second = mock.MagicMock(), mock.MagicMock()

        with mock.patch("run_until.runtime.listeners.atexit") as atexit_mock:
            signals.on("exit", first)
            signals.on("exit", second)
            atexit_mock.register.assert_called_once_with(signals._on_exit)

            signals.remove_listener("exit", first)
            atexit_mock.unregister.assert_not_called()

            signals.remove_listener("exit", second)
            atexit_mock.unregister.assert_called_once_with(signals._on_exit)

    def test_emit_calls_every_handler(self):
        signals = ProcessSignals()
        first, second = mock.MagicMock(), mock.MagicMock()
        with mock.patch("run_until.runtime.listeners.atexit"):
            signals.on("exit", first)
            signals.on("exit", second)
            signals._on_exit()
            signals.remove_listener("exit", first)
            signals.remove_listener("exit", second)

        first.assert_called_once_with()
        second.assert_called_once_with()

    def test_failing_handler_does_not_stop_others(self):
        signals = ProcessSignals()
        failing = mock.MagicMock(side_effect=RuntimeError("boom"))
        other = mock.MagicMock()
        with mock.patch("run_until.runtime.listeners.atexit"):
            signals.on("exit", failing)
            signals.on("exit", other)
            signals.emit("exit")
            signals.remove_listener("exit", failing)
            signals.remove_listener("exit", other)

        other.assert_called_once_with()

    def test_remove_unknown_handler(self):
        signals = ProcessSignals()
        assert signals.remove_listener("exit", mock.MagicMock()) is False

    def test_unsupported_event(self):
        with pytest.raises(ValueError):
            ProcessSignals().on("SIGHUP", mock.MagicMock())


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
class TestProcessSignalsPosix:
    """真实信号测试（仅 POSIX）。"""

    @pytest.mark.asyncio
    async def test_sigterm_dispatched_to_all_handlers(self):
        signals = ProcessSignals()
        original = signal.getsignal(signal.SIGTERM)
        first, second = mock.MagicMock(), mock.MagicMock()

        signals.on("SIGTERM", first)
        signals.on("SIGTERM", second)
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            for _ in range(50):
                if first.called and second.called:
                    break
                await asyncio.sleep(0.02)
        finally:
            signals.remove_listener("SIGTERM", first)
            signals.remove_listener("SIGTERM", second)

        first.assert_called_once_with()
        second.assert_called_once_with()
        assert signals.listener_count("SIGTERM") == 0
        assert signal.getsignal(signal.SIGTERM) == original

    @pytest.mark.asyncio
    async def test_handler_removed_between_runs(self):
        """移除后处理器不再被调用。"""
        signals = ProcessSignals()
        handler = mock.MagicMock()
        keeper = mock.MagicMock()

        signals.on("SIGINT", handler)
        signals.on("SIGINT", keeper)
        signals.remove_listener("SIGINT", handler)
        try:
            signals.emit("SIGINT")
        finally:
            signals.remove_listener("SIGINT", keeper)

        handler.assert_not_called()
        keeper.assert_called_once_with()
