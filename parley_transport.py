import logging
import shlex
import subprocess
import threading
from queue import Empty, Queue
from typing import List, Optional

from parley_errors import SpawnError, WriteError
from parley_typing import ServerConfig

kREAD_CHUNK_SIZE = 65536


class ProcessTransport:
    """Byte pipe to a language server subprocess.

    The server's stdin and stdout are pumped by daemon threads into
    thread-safe queues, so neither `write` nor `read_available` ever
    blocks the caller. stderr is pumped line by line into its own queue.
    """

    def __init__(
        self,
        logger: logging.Logger,
        name: str,
        process: subprocess.Popen,
    ):
        self._logger = logger
        self._name = name
        self._process = process
        self._send_queue: Queue = Queue()
        self._receive_queue: Queue = Queue()
        self._stderr_queue: Queue = Queue()
        self._eof = threading.Event()
        self._broken = threading.Event()
        self._closed = threading.Event()

        # Thread responsible for sending/writing bytes.
        self._writer = threading.Thread(
            name=f"{name} Writer",
            target=self._start_writer,
            daemon=True,
        )
        self._writer.start()

        # Thread responsible for reading bytes.
        self._reader = threading.Thread(
            name=f"{name} Reader",
            target=self._start_reader,
            daemon=True,
        )
        self._reader.start()

        # Thread responsible for reading the server's stderr.
        self._stderr_reader = threading.Thread(
            name=f"{name} Stderr",
            target=self._start_stderr_reader,
            daemon=True,
        )
        self._stderr_reader.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    def returncode(self) -> Optional[int]:
        return self._process.poll()

    def _start_reader(self):
        self._logger.debug(f"[{self._name}] Reader started 🟢")

        out = self._process.stdout

        try:
            while chunk := out.read1(kREAD_CHUNK_SIZE):
                self._receive_queue.put(chunk)

        except (OSError, ValueError) as e:
            # Normal shutdown can cause I/O errors as pipes close.
            if not self._closed.is_set():
                self._logger.error(f"[{self._name}] Reader error: {e}")

        finally:
            self._eof.set()

            self._logger.debug(f"[{self._name}] Reader stopped 🔴")

    def _start_writer(self):
        self._logger.debug(f"[{self._name}] Writer started 🟢")

        while (data := self._send_queue.get()) is not None:
            try:
                self._process.stdin.write(data)
                self._process.stdin.flush()

            except (OSError, ValueError) as e:
                self._logger.error(
                    f"[{self._name}] Can't write to server's stdin (broken pipe): {e}"
                )

                self._broken.set()

                break

        self._logger.debug(f"[{self._name}] Writer stopped 🔴")

    def _start_stderr_reader(self):
        err = self._process.stderr

        try:
            for line in iter(err.readline, b""):
                self._stderr_queue.put(line.decode("utf-8", errors="replace").rstrip())

        except (OSError, ValueError):
            pass

    def write(self, data: bytes):
        """
        Queue `data` to be written to the server's stdin.

        Raises WriteError if the pipe is known to be broken or the transport was closed.
        """
        if self._broken.is_set() or self._closed.is_set():
            raise WriteError(f"{self._name} - Can't write; Transport is closed")

        self._send_queue.put(data)

    def read_available(self) -> Optional[bytes]:
        """
        Returns the bytes received so far, or None if nothing is available (would block).
        """
        chunks = []

        while True:
            try:
                chunks.append(self._receive_queue.get_nowait())
            except Empty:
                break

        return b"".join(chunks) if chunks else None

    def read_stderr(self) -> List[str]:
        lines = []

        while True:
            try:
                lines.append(self._stderr_queue.get_nowait())
            except Empty:
                break

        return lines

    def is_alive(self) -> bool:
        if self._broken.is_set() or self._closed.is_set():
            return False

        # Bytes received before end-of-stream still count as alive until they're read.
        if self._eof.is_set() and self._receive_queue.empty():
            return False

        return True

    def close(self, timeout: float = 5.0) -> Optional[int]:
        """
        Stop writing, close the server's stdin and wait for the process to terminate.

        The process is killed if it doesn't terminate within `timeout` seconds.
        Returns the process' returncode.
        """
        if self._closed.is_set():
            return self._process.poll()

        self._closed.set()

        # Enqueue `None` to signal that the writer must stop - after pending writes.
        self._send_queue.put(None)
        self._writer.join(timeout)

        try:
            self._process.stdin.close()
        except (OSError, ValueError):
            pass

        try:
            self._logger.debug(f"Waiting for server {self._name} to terminate...")

            returncode = self._process.wait(timeout)
        except subprocess.TimeoutExpired:
            self._logger.info(
                f"Terminate timeout expired; Will explicitly kill server {self._name}"
            )

            # Explicitly kill the process if it did not terminate.
            self._process.kill()

            returncode = self._process.wait()

        self._logger.info(f"{self._name} server terminated with returncode {returncode}")

        return returncode


def spawn(
    config: ServerConfig,
    logger: Optional[logging.Logger] = None,
) -> ProcessTransport:
    """
    Launch the server configured by `config`.

    Raises SpawnError if the server binary is missing or can't be launched.
    """
    logger = logger or logging.getLogger(__name__)

    name = config["name"]
    command = config.get("command") or []

    if not command:
        raise SpawnError(f"{name} - No command configured")

    logger.debug(f"Start {name} `{shlex.join(command)}`")

    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        # Common failures: command not found, permission denied, no memory.
        raise SpawnError(f"{name} - Failed to start server process: {e}") from e

    logger.info(f"{name} is up and running; PID {process.pid}")

    return ProcessTransport(logger, name, process)
