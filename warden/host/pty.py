import asyncio
import codecs
import fcntl
import os
import pty
import struct
import termios
from collections.abc import Callable
from dataclasses import dataclass, field

from warden.logging import get_logger

_logger = get_logger(__name__)

READ_SIZE = 4096
RECENT_CAP = 100_000
DEFAULT_SIZE = (40, 120)
# Give the CLI a moment to render typed text before Enter
SUBMIT_DELAY = 0.05

type OutputCallback = Callable[[str, str], None]
type ExitCallback = Callable[[str], None]


@dataclass
class _PtyProcess:
    process: asyncio.subprocess.Process
    master_fd: int
    decoder: codecs.IncrementalDecoder = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")("replace"))
    recent: str = ""
    echo: bool = False


class PtyHost:
    """Runs CLI processes under pseudo-terminals on the current event loop.

    Output is decoded incrementally and handed to ``on_output``; when the
    master side hits EOF the process is reaped and ``on_exit`` is called.
    """

    def __init__(self, on_output: OutputCallback, on_exit: ExitCallback):
        self.on_output = on_output
        self.on_exit = on_exit
        self._procs: dict[str, _PtyProcess] = {}
        self._reaping: set[asyncio.Task] = set()

    async def spawn(
        self,
        session_id: str,
        argv: list[str],
        cwd: str | None = None,
        size: tuple[int, int] | None = None,
        echo: bool = False,
    ) -> int:
        if session_id in self._procs:
            raise ValueError(f"Session {session_id} already has a process")

        master_fd, slave_fd = pty.openpty()
        rows, cols = size or _terminal_size()
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._procs[session_id] = _PtyProcess(process=process, master_fd=master_fd, echo=echo)
        asyncio.get_running_loop().add_reader(master_fd, self._read, session_id)
        _logger.info("Started %s for session %s (pid %d, %dx%d)", argv[0], session_id, process.pid, cols, rows)
        return process.pid

    def _read(self, session_id: str) -> None:
        proc = self._procs.get(session_id)
        if proc is None:
            return
        try:
            data = os.read(proc.master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO on Linux once the child side is gone
            data = b""

        if not data:
            self._close(session_id)
            return

        chunk = proc.decoder.decode(data)
        if not chunk:
            return
        proc.recent = (proc.recent + chunk)[-RECENT_CAP:]
        if proc.echo:
            os.write(1, data)
        self.on_output(session_id, chunk)

    def _close(self, session_id: str) -> None:
        proc = self._procs.pop(session_id, None)
        if proc is None:
            return
        asyncio.get_running_loop().remove_reader(proc.master_fd)
        os.close(proc.master_fd)
        task = asyncio.create_task(self._reap(session_id, proc.process))
        self._reaping.add(task)
        task.add_done_callback(self._reaping.discard)

    async def _reap(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        _logger.info("Session %s process exited with code %s", session_id, code)
        self.on_exit(session_id)

    async def send_text(self, session_id: str, text: str) -> None:
        proc = self._procs.get(session_id)
        if proc is None:
            _logger.warning("No process for session %s, dropping input", session_id)
            return
        if text:
            os.write(proc.master_fd, text.encode())
            await asyncio.sleep(SUBMIT_DELAY)
        os.write(proc.master_fd, b"\r")

    async def get_recent_buffer(self, session_id: str, max_bytes: int) -> str:
        proc = self._procs.get(session_id)
        if proc is None:
            return ""
        return proc.recent[-max_bytes:]

    async def terminate(self, session_id: str, timeout: float = 5.0) -> None:
        proc = self._procs.get(session_id)
        if proc is None:
            return
        if proc.process.returncode is None:
            proc.process.terminate()
            try:
                await asyncio.wait_for(proc.process.wait(), timeout)
            except TimeoutError:
                _logger.warning("Session %s did not exit, killing", session_id)
                proc.process.kill()

    async def close(self) -> None:
        for session_id in list(self._procs):
            await self.terminate(session_id)
            # The reader may not have seen EOF yet
            self._close(session_id)
        if self._reaping:
            await asyncio.gather(*self._reaping, return_exceptions=True)


def _terminal_size() -> tuple[int, int]:
    try:
        size = os.get_terminal_size()
    except OSError:
        return DEFAULT_SIZE
    return size.lines, size.columns
