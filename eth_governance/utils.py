"""Process and logging helpers for driver scripts and tests."""

import logging
import os
import random
import socket
import time
from pathlib import Path
from typing import Optional

import psutil


logger = logging.getLogger(__name__)


def is_localhost_port_listening(port: int, host="localhost") -> bool:
    """Is some process bound to a local TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((host, port)) == 0


def find_free_port(min_port: int = 20_000, max_port: int = 40_000, max_attempt: int = 20) -> int:
    """Pick a random local port nobody listens to.

    .. note ::

        Another process may grab the port before we bind it.

    :raise RuntimeError:
        All attempts hit a taken port
    """
    for _ in range(max_attempt):
        port = random.randrange(min_port, max_port)
        if not is_localhost_port_listening(port, "127.0.0.1"):
            return port

    raise RuntimeError(f"No free port in {min_port} - {max_port} after {max_attempt} attempts")


def _drain(stream, label: str, log_level: Optional[int]) -> bytes:
    output = b""
    for line in stream.readlines():
        output += line
        if log_level is not None:
            logger.log(log_level, "%s: %s", label, line.decode("utf-8", errors="replace").strip())
    return output


def shutdown_hard(
    process: psutil.Popen,
    log_level: Optional[int] = None,
    block=True,
    block_timeout=30,
    check_port: Optional[int] = None,
) -> tuple[bytes, bytes]:
    """SIGKILL a background process and collect its output.

    :param log_level:
        Also write the process output to logging at this level

    :param check_port:
        Wait until the process has released this port

    :return:
        stdout, stderr
    """
    if process.poll() is None:
        process.kill()

    stdout = _drain(process.stdout, "stdout", log_level)
    stderr = _drain(process.stderr, "stderr", log_level)

    if block:
        assert check_port is not None, "Give check_port to block the execution"
        deadline = time.time() + block_timeout
        while is_localhost_port_listening(check_port):
            if time.time() > deadline:
                raise AssertionError(f"Process still holds port {check_port} after {block_timeout} seconds")
            time.sleep(0.1)

    return stdout, stderr


def setup_console_logging(default_log_level="warning", log_file: Path | None = None) -> logging.Logger:
    """Set up log output for driver scripts.

    - ``LOG_LEVEL`` environment variable overrides ``default_log_level``

    - Coloured output if ``coloredlogs`` is installed

    - Quiet down web3 and urllib3 request logging

    :param log_file:
        Also write INFO level and above to this file

    :return:
        Root logger
    """
    level_name = os.environ.get("LOG_LEVEL", default_log_level).upper()
    level = getattr(logging, level_name, None)
    assert isinstance(level, int), f"No log level: {level_name}"

    fmt = "%(asctime)s %(name)-44s %(message)s"
    date_fmt = "%H:%M:%S"

    try:
        # Optional dependency, see the logs extra
        import coloredlogs

        coloredlogs.install(level=level, fmt=fmt, datefmt=date_fmt)
    except ImportError:
        logging.basicConfig(level=level, format=fmt, datefmt=date_fmt)

    root = logging.getLogger()
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(min(logging.INFO, level))
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root.setLevel(min(logging.INFO, level))
        root.addHandler(file_handler)

    for noisy in ("web3.providers.HTTPProvider", "web3.RequestManager", "urllib3.connectionpool"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return root
