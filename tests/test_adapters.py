"""
Unit tests for the engine, process table, storage and security adapters.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from pdf_service.conversion import EngineError
from pdf_service.conversion.adapters import (
    ApiKeySecurity,
    PsutilProcessTable,
    TempStorage,
    UnoconvEngine,
    UnoconvListener,
    hash_api_key,
)


def _fake_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.pid = 321
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    return process


class TestUnoconvEngine:
    @pytest.mark.asyncio
    async def test_convert_returns_stdout(self):
        process = _fake_process(stdout=b"%PDF-1.4")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            data = await UnoconvEngine("unoconv", 9000).convert_to_pdf("/tmp/in.docx")

        assert data == b"%PDF-1.4"
        args = spawn.call_args.args
        assert args[0] == "unoconv"
        assert "--format=pdf" in args
        assert "--stdout" in args
        assert "--port=9000" in args
        assert args[-1] == "/tmp/in.docx"

    @pytest.mark.asyncio
    async def test_convert_failure_raises_engine_error_with_stderr(self):
        process = _fake_process(returncode=1, stderr=b"Error: source file could not be opened\n")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(EngineError, match="could not be opened"):
                await UnoconvEngine().convert_to_pdf("/tmp/in.doc")

    @pytest.mark.asyncio
    async def test_convert_failure_without_stderr(self):
        process = _fake_process(returncode=251)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(EngineError, match="code 251"):
                await UnoconvEngine().convert_to_pdf("/tmp/in.doc")

    @pytest.mark.asyncio
    async def test_cancelled_conversion_kills_client(self):
        process = _fake_process()
        process.communicate = AsyncMock(side_effect=asyncio.CancelledError())
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(asyncio.CancelledError):
                await UnoconvEngine().convert_to_pdf("/tmp/in.doc")

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel_during_spawn_kills_client_once_started(self):
        process = _fake_process()
        started = asyncio.Event()

        async def slow_spawn(*args, **kwargs):
            await started.wait()
            return process

        with patch("asyncio.create_subprocess_exec", slow_spawn):
            task = asyncio.create_task(UnoconvEngine().convert_to_pdf("/tmp/in.doc"))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            started.set()
            for _ in range(20):
                if process.kill.called:
                    break
                await asyncio.sleep(0.005)

        process.kill.assert_called_once()
        process.communicate.assert_not_called()

    @pytest.mark.asyncio
    async def test_launch_starts_listener_on_port(self):
        process = _fake_process(returncode=None)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            listener = await UnoconvEngine("unoconv", 8085).launch()

        assert spawn.call_args.args[:3] == ("unoconv", "--listener", "--port=8085")
        assert listener.port == 8085
        assert listener.pid == 321
        assert listener.alive


class TestUnoconvListener:
    @pytest.mark.asyncio
    async def test_wait_closed_returns_exit_code(self):
        process = MagicMock(returncode=None)
        process.wait = AsyncMock(return_value=139)

        assert await UnoconvListener(process, 8085).wait_closed() == 139

    def test_terminate_tolerates_dead_process(self):
        process = MagicMock(returncode=None)
        process.terminate.side_effect = ProcessLookupError()

        UnoconvListener(process, 8085).terminate()

    def test_terminate_skips_exited_process(self):
        process = MagicMock(returncode=0)

        UnoconvListener(process, 8085).terminate()
        process.terminate.assert_not_called()


def _proc(pid, name, cmdline):
    return SimpleNamespace(info={"pid": pid, "name": name, "cmdline": cmdline})


class TestPsutilProcessTable:
    def test_matches_engine_processes_by_command_line(self):
        processes = [
            _proc(10, "soffice.bin", ["soffice.bin", "--headless", "--accept=socket,host=127.0.0.1,port=8085;urp;"]),
            _proc(11, "python3", ["python3", "/usr/bin/unoconv", "--listener", "--port=8085"]),
            _proc(12, "soffice.bin", ["soffice.bin", "--accept=socket,host=127.0.0.1,port=18085;urp;"]),
            _proc(13, "nginx", ["nginx", "-p", "8085"]),
            _proc(14, "soffice.bin", None),
        ]
        with patch.object(psutil, "process_iter", return_value=processes), \
                patch.object(psutil, "net_connections", return_value=[]):
            assert PsutilProcessTable().engine_pids(8085) == [10, 11]

    def test_matches_listener_on_port(self):
        conns = [
            SimpleNamespace(pid=20, laddr=SimpleNamespace(port=8085), status=psutil.CONN_LISTEN),
            SimpleNamespace(pid=21, laddr=SimpleNamespace(port=8084), status=psutil.CONN_LISTEN),
            SimpleNamespace(pid=None, laddr=SimpleNamespace(port=8085), status=psutil.CONN_LISTEN),
        ]
        with patch.object(psutil, "process_iter", return_value=[]), \
                patch.object(psutil, "net_connections", return_value=conns):
            assert PsutilProcessTable().engine_pids(8085) == [20]

    def test_socket_listing_denied_falls_back_to_command_line(self):
        processes = [_proc(10, "soffice.bin", ["soffice.bin", "--accept=socket,port=8085;urp;"])]
        with patch.object(psutil, "process_iter", return_value=processes), \
                patch.object(psutil, "net_connections", side_effect=psutil.AccessDenied()):
            assert PsutilProcessTable().engine_pids(8085) == [10]

    def test_kill_missing_process_raises_lookup_error(self):
        with patch.object(psutil, "Process", side_effect=psutil.NoSuchProcess(99)):
            with pytest.raises(ProcessLookupError):
                PsutilProcessTable().kill(99)

    def test_kill_waits_for_exit(self):
        proc = MagicMock()
        with patch.object(psutil, "Process", return_value=proc):
            PsutilProcessTable(kill_timeout=1.5).kill(99)

        proc.kill.assert_called_once()
        proc.wait.assert_called_once_with(timeout=1.5)


class TestTempStorage:
    def test_paths_live_under_data_dir(self, tmp_path):
        storage = TempStorage(str(tmp_path / "data"))

        input_path = Path(storage.input_path(".docx"))
        output_path = Path(storage.output_path("abc123"))

        assert input_path.parent == (tmp_path / "data").resolve()
        assert input_path.suffix == ".docx"
        assert output_path.name.endswith("_abc123.pdf")

    def test_input_paths_are_unique(self, tmp_path):
        storage = TempStorage(str(tmp_path))
        assert storage.input_path(".doc") != storage.input_path(".doc")

    def test_delete(self, tmp_path):
        target = tmp_path / "old.pdf"
        target.write_bytes(b"x")

        TempStorage(str(tmp_path)).delete(str(target))
        assert not target.exists()

    def test_delete_missing_file_is_logged(self, tmp_path, caplog):
        TempStorage(str(tmp_path)).delete(str(tmp_path / "nope.pdf"))
        assert "Unable to access file for deletion" in caplog.text


class TestApiKeySecurity:
    def test_disabled_without_key(self):
        security = ApiKeySecurity(None)
        assert not security.enabled()
        assert security.verify(None)

    def test_plaintext_key(self):
        security = ApiKeySecurity("s3cret")
        assert security.enabled()
        assert security.verify("s3cret")
        assert not security.verify("wrong")
        assert not security.verify(None)
        assert not security.verify("")

    def test_argon2_hashed_key(self):
        security = ApiKeySecurity(hash_api_key("s3cret"))
        assert security.verify("s3cret")
        assert not security.verify("wrong")

    def test_corrupt_hash_rejects(self):
        assert not ApiKeySecurity("$argon2id$garbage").verify("s3cret")
