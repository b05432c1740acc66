"""
Unit tests for the cleanup registry.
"""
import signal

import pytest


class TestCleanupRegistry:

    def test_register_and_unregister(self, registry):
        registry.register("a", lambda: None)
        registry.register("b", lambda: None)
        registry.unregister("a")
        registry.unregister("missing")
        assert registry.registered() == ["b"]

    def test_run_all_runs_each_once(self, registry):
        """Test that callbacks run once and are forgotten."""
        calls = []
        registry.register("a", lambda: calls.append("a"))
        registry.register("b", lambda: calls.append("b"))
        registry.run_all()
        registry.run_all()
        assert calls == ["a", "b"]
        assert registry.registered() == []

    def test_failing_callback_does_not_stop_others(self, registry):
        calls = []

        def boom():
            raise RuntimeError("cleanup failed")

        registry.register("a", boom)
        registry.register("b", lambda: calls.append("b"))
        registry.run_all()
        assert calls == ["b"]

    def test_signal_chains_previous_handler(self, registry):
        """Test that the previous handler runs after the cleanup."""
        calls = []
        registry._previous[signal.SIGTERM] = lambda signum, frame: calls.append(("previous", signum))
        registry.register("a", lambda: calls.append("cleanup"))
        registry._handle(signal.SIGTERM, None)
        assert calls == ["cleanup", ("previous", signal.SIGTERM)]

    def test_sigint_without_previous_handler(self, registry):
        registry._previous[signal.SIGINT] = signal.SIG_DFL
        with pytest.raises(KeyboardInterrupt):
            registry._handle(signal.SIGINT, None)

    def test_sigterm_without_previous_handler_exits(self, registry):
        with pytest.raises(SystemExit) as exc_info:
            registry._handle(signal.SIGTERM, None)
        assert exc_info.value.code == 128 + signal.SIGTERM
