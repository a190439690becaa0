"""Tests for supervised process startup and teardown."""

import sys

import pytest
import pytest_asyncio

from syload.automation.process_utils import ProcessLaunchError, ProcessRegistry, StartupTimeout

LISTENING_SERVER = "import time; print('booting'); print('Listening on 8001', flush=True); time.sleep(30)"
QUIET_SERVER = "import time; time.sleep(30)"


@pytest_asyncio.fixture
async def registry():
    reg = ProcessRegistry(terminate_timeout=2.0)
    yield reg
    await reg.shutdown_all()


class TestProcessRegistry:
    @pytest.mark.asyncio
    async def test_ready_pattern(self, registry, tmp_path):
        log_path = tmp_path / "server.log"
        proc = await registry.spawn("server", [sys.executable, "-c", LISTENING_SERVER], log_path=log_path)
        await proc.wait_ready(r"Listening on \d+", timeout=10.0)

        assert proc.returncode is None
        text = log_path.read_text(encoding="utf-8")
        assert text.startswith("[launcher] starting server:")
        assert "Listening on 8001" in text

    @pytest.mark.asyncio
    async def test_output_after_ready_is_drained_into_log(self, tmp_path):
        registry = ProcessRegistry(terminate_timeout=2.0)
        log_path = tmp_path / "server.log"
        script = "import time; print('Listening', flush=True); print('serving', flush=True); time.sleep(30)"
        proc = await registry.spawn("server", [sys.executable, "-c", script], log_path=log_path)
        await proc.wait_ready("Listening", timeout=10.0)
        assert proc.drain_task is not None

        await registry.shutdown_all()

        assert proc.drain_task.done()
        assert "serving" in log_path.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_ready_timeout(self, registry):
        proc = await registry.spawn("server", [sys.executable, "-c", QUIET_SERVER])
        with pytest.raises(StartupTimeout, match="server failed to start within 0.3s"):
            await proc.wait_ready("Listening", timeout=0.3)

    @pytest.mark.asyncio
    async def test_exit_before_ready(self, registry):
        proc = await registry.spawn("server", [sys.executable, "-c", "print('bye')"])
        with pytest.raises(ProcessLaunchError, match="exited early"):
            await proc.wait_ready("Listening", timeout=10.0)

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, registry):
        await registry.spawn("server", [sys.executable, "-c", QUIET_SERVER])
        with pytest.raises(ProcessLaunchError):
            await registry.spawn("server", [sys.executable, "-c", QUIET_SERVER])

    @pytest.mark.asyncio
    async def test_missing_binary(self, registry):
        with pytest.raises(ProcessLaunchError, match="failed to start"):
            await registry.spawn("ghost", ["/nonexistent/syload-binary"])

    @pytest.mark.asyncio
    async def test_shutdown_all_terminates_everything(self):
        registry = ProcessRegistry(terminate_timeout=2.0)
        first = await registry.spawn("a", [sys.executable, "-c", QUIET_SERVER])
        second = await registry.spawn("b", [sys.executable, "-c", QUIET_SERVER])

        await registry.shutdown_all()

        assert first.returncode is not None
        assert second.returncode is not None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_passthrough_filter(self, registry, capsys):
        script = "import time; print('noise'); print('ERROR boom'); print('Listening', flush=True); time.sleep(30)"
        proc = await registry.spawn(
            "server", [sys.executable, "-c", script], print_output=True, filters=["ERROR"]
        )
        await proc.wait_ready("Listening", timeout=10.0)
        err = capsys.readouterr().err
        assert "[server] ERROR boom" in err
        assert "noise" not in err
