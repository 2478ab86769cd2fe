"""Tests for LocalProcessRuntime with real child processes."""

import asyncio
import json
import stat
import sys
from pathlib import Path

import httpx
import pytest

from tenanthub.adapters.runtime.local_process import LocalProcessRuntime
from tenanthub.core.interfaces import RuntimeHandle

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class ExitRecorder:
    def __init__(self) -> None:
        self.codes: list[int] = []
        self.done = asyncio.Event()

    async def __call__(self, handle: RuntimeHandle, code: int) -> None:
        self.codes.append(code)
        self.done.set()


@pytest.fixture
def sleeper(tmp_path: Path) -> Path:
    """A fake tenant binary that ignores its arguments and stays up."""
    script = tmp_path / "fake-tenant"
    script.write_text("#!/bin/sh\necho booted\nexec sleep 30\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script


async def test_exit_is_reported(tmp_path: Path) -> None:
    # python cannot open a script named "serve" and exits with status 2
    runtime = LocalProcessRuntime(sys.executable)
    on_exit = ExitRecorder()

    handle = await runtime.launch("i1", 8090, tmp_path / "i1", on_exit)
    await asyncio.wait_for(on_exit.done.wait(), timeout=10)

    assert on_exit.codes == [2]
    assert handle.pid is not None
    assert (tmp_path / "i1").is_dir()
    await runtime.close()


async def test_terminate(tmp_path: Path, sleeper: Path) -> None:
    runtime = LocalProcessRuntime(str(sleeper), kill_after=5)
    on_exit = ExitRecorder()
    handle = await runtime.launch("i1", 8090, tmp_path / "i1", on_exit)

    await runtime.terminate(handle)
    await asyncio.wait_for(on_exit.done.wait(), timeout=10)

    assert handle.process.returncode is not None
    assert on_exit.codes == [handle.process.returncode]
    # Terminating an exited process is a no-op
    await runtime.terminate(handle)
    await runtime.close()


class TestBootstrapAdmin:
    async def test_creates_admin(self, make_http_client) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "a1"})

        runtime = LocalProcessRuntime("tenant", http_client=make_http_client(handler))

        await runtime.bootstrap_admin(RuntimeHandle(instance_id="i1", port=8091), "a@b.test", "pw")

        assert str(seen[0].url) == "http://127.0.0.1:8091/api/admins"
        assert json.loads(seen[0].content) == {
            "email": "a@b.test",
            "password": "pw",
            "passwordConfirm": "pw",
        }

    async def test_existing_admin_is_success(self, make_http_client) -> None:
        runtime = LocalProcessRuntime(
            "tenant", http_client=make_http_client(lambda r: httpx.Response(400))
        )

        await runtime.bootstrap_admin(RuntimeHandle(instance_id="i1", port=8091), "a@b.test", "pw")

    async def test_server_error_raises(self, make_http_client) -> None:
        runtime = LocalProcessRuntime(
            "tenant", http_client=make_http_client(lambda r: httpx.Response(500))
        )

        with pytest.raises(httpx.HTTPStatusError):
            await runtime.bootstrap_admin(
                RuntimeHandle(instance_id="i1", port=8091), "a@b.test", "pw"
            )


async def test_nothing_to_adopt() -> None:
    runtime = LocalProcessRuntime("tenant", bind_host="0.0.0.0")

    assert await runtime.adopt("i1") is None
    assert runtime.endpoint(RuntimeHandle(instance_id="i1", port=9000)).base_url == "http://0.0.0.0:9000"
    await runtime.close()
