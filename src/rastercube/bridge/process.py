# src/rastercube/bridge/process.py

"""
This module runs external chunk workers.

One worker process is spawned per chunk. The chunk frame is written to the
worker's standard input while its standard output and error are drained
concurrently, so neither side can block on a full pipe buffer. The call blocks
only the calling thread and holds no lock.
"""

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from rastercube.exceptions import ConfigurationError, ExternalProcessError, FramingError
from .protocol import decode_frame, encode_frame

log = logging.getLogger(__name__)

__all__ = [
    "ExternalProcess"
]

def _decode(stream: Optional[bytes]) -> str:
    return (stream or b"").decode("utf-8", errors="replace")

class ExternalProcess:
    """
    Executes a worker command on one chunk at a time.

    Args:
        command: Argument list, or a shell-like string split with shlex.
        timeout: Seconds to wait for the worker; None waits forever.
        env: Extra environment variables for the worker.
        cwd: Working directory of the worker.
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None
    ):
        if isinstance(command, str):
            command = shlex.split(command)
        self.command = [str(c) for c in command]
        if not self.command:
            raise ConfigurationError("Worker command must not be empty")
        if timeout is not None and timeout <= 0:
            raise ConfigurationError(f"Worker timeout must be positive, got {timeout}")
        self.timeout = timeout
        self.env = dict(env or {})
        self.cwd = str(cwd) if cwd is not None else None

    def run(
        self,
        data: np.ndarray,
        nodata: float,
        expected_shape: Optional[Sequence[Optional[int]]] = None,
        context: Optional[Mapping[str, str]] = None
    ) -> Tuple[np.ndarray, float]:
        """
        Send one chunk to a fresh worker and parse the chunk it returns.

        Args:
            data: (band, t, y, x) array to send.
            nodata: No-data value of `data`.
            expected_shape: Optional (band, t, y, x) the reply must match; None entries are free.
            context: Per-chunk environment variables (chunk id, bounds, ...).

        Returns:
            Tuple[np.ndarray, float]: The returned array and its no-data value.

        Raises:
            ExternalProcessError: On start failure, timeout, non-zero exit or malformed output.
        """
        frame = encode_frame(data, nodata)

        env = os.environ.copy()
        env.update(self.env)
        if context:
            env.update({k: str(v) for k, v in context.items()})

        log.debug(f"Starting worker {self.command} with {len(frame)} byte frame")

        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=self.cwd
            )
        except OSError as e:
            raise ExternalProcessError(f"Failed to start worker {self.command}: {e}") from e

        try:
            stdout, stderr = proc.communicate(input=frame, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            _, stderr = proc.communicate()
            raise ExternalProcessError(
                f"Worker {self.command} timed out after {self.timeout}s",
                returncode=None,
                stderr=_decode(stderr)
            ) from None
        except BaseException:
            proc.kill()
            proc.wait()
            raise

        if proc.returncode != 0:
            raise ExternalProcessError(
                f"Worker {self.command} exited with code {proc.returncode}",
                returncode=proc.returncode,
                stderr=_decode(stderr)
            )

        try:
            return decode_frame(stdout, expected_shape)
        except FramingError as e:
            raise FramingError(
                f"Worker {self.command} returned a malformed frame: {e}",
                returncode=proc.returncode,
                stderr=_decode(stderr)
            ) from e

    def __repr__(self) -> str:
        return f"ExternalProcess({' '.join(shlex.quote(c) for c in self.command)!r}, timeout={self.timeout})"
