import asyncio
import hmac
import logging
import re
import secrets
import time
import uuid
from pathlib import Path

import psutil

from .errors import EngineError
from .interfaces import ConverterGateway, EngineLauncher, ProcessTable, SecurityGateway, StorageGateway

logger = logging.getLogger(__name__)


class UnoconvListener:
    """A running ``unoconv --listener`` process."""

    def __init__(self, process: asyncio.subprocess.Process, port: int) -> None:
        self._process = process
        self.port = port

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def alive(self) -> bool:
        return self._process.returncode is None

    async def wait_closed(self) -> int | None:
        return await self._process.wait()

    def terminate(self) -> None:
        if not self.alive:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _kill_spawned(spawn: asyncio.Future) -> None:
    if spawn.cancelled() or spawn.exception() is not None:
        return
    _kill(spawn.result())


class UnoconvEngine(ConverterGateway, EngineLauncher):
    def __init__(self, binary: str = "unoconv", port: int = 8085) -> None:
        self._binary = binary
        self._port = port

    async def launch(self) -> UnoconvListener:
        process = await asyncio.create_subprocess_exec(
            self._binary,
            "--listener",
            f"--port={self._port}",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        return UnoconvListener(process, self._port)

    async def convert_to_pdf(self, source_path: str) -> bytes:
        spawn = asyncio.ensure_future(asyncio.create_subprocess_exec(
            self._binary,
            "--format=pdf",
            "--stdout",
            f"--port={self._port}",
            source_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        ))
        try:
            process = await asyncio.shield(spawn)
        except asyncio.CancelledError:
            spawn.add_done_callback(_kill_spawned)
            raise
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # don't leave a client attached to a dead or restarting listener
            _kill(process)
            raise
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise EngineError(message or f"unoconv exited with code {process.returncode}")
        return stdout


class PsutilProcessTable(ProcessTable):
    """Finds engine processes by command line and by listening port."""

    ENGINE_NAMES = ("soffice", "libreoffice", "oosplash", "unoconv")

    def __init__(self, names: tuple[str, ...] = ENGINE_NAMES, kill_timeout: float = 3.0) -> None:
        self._names = names
        self._kill_timeout = kill_timeout

    def engine_pids(self, port: int) -> list[int]:
        port_re = re.compile(rf"(?<!\d){port}(?!\d)")
        pids: set[int] = set()
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                name = proc.info["name"] or ""
                cmdline = " ".join(proc.info["cmdline"] or [])
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            haystack = f"{name} {cmdline}".lower()
            if any(n in haystack for n in self._names) and port_re.search(cmdline):
                pids.add(proc.info["pid"])

        try:
            for conn in psutil.net_connections(kind="inet"):
                if conn.pid and conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                    pids.add(conn.pid)
        except psutil.AccessDenied:
            logger.debug("Not allowed to list sockets, matching engine processes by command line only")
        return sorted(pids)

    def kill(self, pid: int) -> None:
        try:
            proc = psutil.Process(pid)
            proc.kill()
            proc.wait(timeout=self._kill_timeout)
        except psutil.NoSuchProcess as e:
            raise ProcessLookupError(pid) from e


class TempStorage(StorageGateway):
    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()
        self._base.mkdir(parents=True, exist_ok=True)

    def input_path(self, extension: str) -> str:
        return str(self._base / f"upload_{uuid.uuid4().hex}{extension}")

    def output_path(self, checksum: str) -> str:
        return str(self._base / f"{int(time.time() * 1000)}_{checksum}.pdf")

    def delete(self, path: str) -> None:
        p = Path(path)
        if not p.exists():
            logger.error("Unable to access file for deletion %s", path)
            return
        try:
            p.unlink()
        except OSError as e:
            logger.error("Unable to delete %s: %s", path, e)
            return
        logger.info("Successfully deleted %s", path)


class ApiKeySecurity(SecurityGateway):
    """Shared API key check.

    The configured key is either the plaintext key or an Argon2 PHC string
    produced by ``hash_api_key``.
    """

    def __init__(self, api_key: str | None) -> None:
        self._api_key = api_key or None

    def enabled(self) -> bool:
        return self._api_key is not None

    def verify(self, presented: str | None) -> bool:
        if self._api_key is None:
            return True
        if not presented:
            return False
        if self._api_key.startswith("$argon2"):
            from argon2.exceptions import VerificationError, InvalidHashError
            from argon2.low_level import Type, verify_secret

            try:
                return verify_secret(self._api_key.encode("utf-8"), presented.encode("utf-8"), Type.ID)
            except (VerificationError, InvalidHashError):
                return False
        return hmac.compare_digest(self._api_key.encode("utf-8"), presented.encode("utf-8"))


def hash_api_key(api_key: str) -> str:
    from argon2.low_level import Type, hash_secret

    phc_bytes = hash_secret(
        secret=api_key.encode("utf-8"),
        salt=secrets.token_bytes(16),
        time_cost=3,
        memory_cost=65536,
        parallelism=1,
        hash_len=32,
        type=Type.ID,
    )
    # hash_secret returns bytes (PHC string); decode to str
    return phc_bytes.decode("utf-8")
