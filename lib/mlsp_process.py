import logging
import shlex
import subprocess
import threading
from queue import Queue
from typing import Callable, List, Optional


class ServerProcess:
    """
    A language server subprocess.

    stdout and stderr are read on their own threads; chunks are passed to
    `on_stdout`/`on_stderr` as they arrive. Once both streams reach end-of-file,
    and the process is gone, `on_exit` is called with its return code.

    Callbacks are called from those threads - the caller must hand them over to
    the thread which owns the protocol state.

    Raises OSError if the program can't be started.
    """

    def __init__(
        self,
        logger: logging.Logger,
        name: str,
        args: List[str],
        on_stdout: Callable[[bytes], None],
        on_stderr: Callable[[bytes], None],
        on_exit: Callable[[Optional[int]], None],
    ):
        self._logger = logger
        self._name = name
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._send_queue = Queue()

        self._logger.debug(f"[{self._name}] Start `{shlex.join(args)}`")

        self._process = subprocess.Popen(
            args,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

        # Thread responsible for reading messages.
        self._stdout_reader = threading.Thread(
            name=f"{name} stdout",
            target=self._start_reader,
            args=(self._process.stdout, self._on_stdout),
            daemon=True,
        )

        # Thread responsible for reading the server's log.
        self._stderr_reader = threading.Thread(
            name=f"{name} stderr",
            target=self._start_reader,
            args=(self._process.stderr, self._on_stderr),
            daemon=True,
        )

        # Thread responsible for sending/writing messages.
        self._writer = threading.Thread(
            name=f"{name} writer",
            target=self._start_writer,
            daemon=True,
        )

        # Thread responsible for monitoring the server process.
        self._monitor = threading.Thread(
            name=f"{name} monitor",
            target=self._start_monitor,
            daemon=True,
        )

        self._stdout_reader.start()
        self._stderr_reader.start()
        self._writer.start()
        self._monitor.start()

    def _start_reader(self, stream, callback: Callable[[bytes], None]):
        try:
            # read1 returns whatever is available (at least one byte) - b"" means end-of-file.
            while chunk := stream.read1(65536):
                callback(chunk)

        except (OSError, ValueError) as e:
            self._logger.error(f"[{self._name}] Reader error: {e}")

    def _start_writer(self):
        while (data := self._send_queue.get()) is not None:
            try:
                self._process.stdin.write(data)
                self._process.stdin.flush()

            except (BrokenPipeError, ValueError) as e:
                # The process is gone - the monitor reports the exit.
                self._logger.error(
                    f"[{self._name}] Can't write to server's stdin (broken pipe): {e}"
                )
                break

    def _start_monitor(self):
        self._stdout_reader.join()
        self._stderr_reader.join()

        returncode = self._process.wait()

        self._logger.debug(f"[{self._name}] Server exited with code {returncode}")

        # Unblock the writer.
        self._send_queue.put(None)

        self._on_exit(returncode)

    def send(self, data: bytes):
        """
        Writes `data` to the server's stdin - asynchronously, in the order it was sent.
        """
        self._send_queue.put(data)

    def kill(self):
        self._send_queue.put(None)

        # Does nothing if the process already exited.
        self._process.kill()
