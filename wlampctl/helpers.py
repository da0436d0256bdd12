"""Locating the XAMPP installation and controlling its Apache process."""

from __future__ import annotations

import os
import re
import subprocess
import sys
import time
from pathlib import Path
from typing import Iterable

import psutil

CREATE_NO_WINDOW = 0x08000000
STARTUP_POLL_ATTEMPTS = 20
SHUTDOWN_POLL_ATTEMPTS = 20
POLL_DELAY = 0.25
ROOT_ENV_VAR = "WLAMPCTL_XAMPP_ROOT"

_UNSIGNED_RE = re.compile(r"\+?\d+")
_U32_MAX = 2**32 - 1


class WlampctlError(Exception):
    """Raised when an operation on the XAMPP installation fails."""


def _no_window() -> dict:
    return {"creationflags": CREATE_NO_WINDOW} if os.name == "nt" else {}


def _parse_u32(text: str) -> int | None:
    if not _UNSIGNED_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _U32_MAX else None


def exec_and_first_line(exe: os.PathLike | str, args: Iterable[str]) -> str | None:
    """Run ``exe`` with ``args`` and return the first stdout line, stripped.

    Returns None when the executable is missing, cannot be run, fails, or
    prints nothing.
    """
    exe = Path(exe)
    if not exe.exists():
        return None
    try:
        result = subprocess.run([str(exe), *args], capture_output=True)
    except OSError:
        return None
    if result.returncode != 0:
        return None
    text = result.stdout.decode("utf-8", errors="replace")
    if not text:
        return None
    return text.split("\n", 1)[0].strip()


def is_xampp_root(path: os.PathLike | str) -> bool:
    """Tell whether ``path`` holds apache/bin/httpd.exe."""
    return (Path(path) / "apache" / "bin" / "httpd.exe").exists()


def detect_xampp_root() -> Path:
    """Find the XAMPP root from the environment or the program's location."""
    from_env = os.environ.get(ROOT_ENV_VAR)
    if from_env is not None:
        path = Path(from_env)
        if is_xampp_root(path):
            return path
        raise WlampctlError(f"{path} is not a XAMPP root (apache/bin/httpd.exe missing)")

    launcher = sys.argv[0] if sys.argv and sys.argv[0] else sys.executable
    try:
        exe = Path(launcher).resolve()
    except OSError as exc:
        raise WlampctlError("unable to resolve current executable path") from exc

    for directory in exe.parents:
        if is_xampp_root(directory):
            return directory
        sibling = directory / "xampp"
        if is_xampp_root(sibling):
            return sibling

    raise WlampctlError(
        "Failed to locate XAMPP root. Move wlampctl next to xampp-control.exe "
        f"or set {ROOT_ENV_VAR}."
    )


def httpd_path(root: os.PathLike | str) -> Path:
    """Return the path of httpd.exe under ``root``; raise if it is missing."""
    path = Path(root) / "apache" / "bin" / "httpd.exe"
    if not path.exists():
        raise WlampctlError(f"{path} not found")
    return path


def pid_file(root: os.PathLike | str) -> Path:
    """Return the path of Apache's PID file."""
    return Path(root) / "apache" / "logs" / "httpd.pid"


def cleanup_pid_file(root: os.PathLike | str) -> None:
    """Remove the PID file if it exists, ignoring failures."""
    path = pid_file(root)
    if path.exists():
        try:
            path.unlink()
        except OSError:
            pass


def read_pid(root: os.PathLike | str) -> int | None:
    """Read the PID from Apache's PID file; None if absent or empty."""
    path = pid_file(root)
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise WlampctlError(f"failed to read {path}") from exc
    trimmed = text.strip()
    if not trimmed:
        return None
    pid = _parse_u32(trimmed)
    if pid is None:
        raise WlampctlError(f"invalid PID in {path}")
    return pid


def process_matches_httpd(pid: int, root: os.PathLike | str) -> bool:
    """Tell whether process ``pid`` runs the httpd.exe of this installation."""
    expected = httpd_path(root).resolve(strict=True)
    try:
        image = psutil.Process(pid).exe()
    except (psutil.Error, ValueError, OSError):
        return False
    if not image:
        return False
    try:
        actual = Path(image).resolve(strict=True)
    except OSError:
        return False
    return actual == expected


def parse_tasklist_pids(text: str) -> list[int]:
    """Extract PIDs from ``tasklist /FO CSV /NH`` output."""
    pids = []
    for line in text.splitlines():
        stripped = line.strip().strip('"')
        if not stripped or stripped.startswith("INFO:"):
            continue
        columns = stripped.split('","')
        if len(columns) < 2:
            continue
        pid = _parse_u32(columns[1])
        if pid is not None:
            pids.append(pid)
    return pids


def find_apache_pid_by_process(root: os.PathLike | str) -> int | None:
    """Scan running httpd.exe processes for one started from this installation."""
    try:
        result = subprocess.run(
            ["tasklist", "/FI", "IMAGENAME eq httpd.exe", "/FO", "CSV", "/NH"],
            capture_output=True,
            **_no_window(),
        )
    except OSError as exc:
        raise WlampctlError("failed to run tasklist") from exc
    if result.returncode != 0:
        return None
    text = result.stdout.decode("utf-8", errors="replace")
    for pid in parse_tasklist_pids(text):
        if process_matches_httpd(pid, root):
            return pid
    return None


def current_apache_pid(root: os.PathLike | str) -> int | None:
    """Return the PID of this installation's running Apache, if any."""
    pid = read_pid(root)
    if pid is not None and process_matches_httpd(pid, root):
        return pid
    return find_apache_pid_by_process(root)


def wait_for_apache_pid(root: os.PathLike | str, attempts: int) -> int | None:
    """Poll the PID file until it names a running httpd of this installation."""
    for _ in range(attempts):
        pid = read_pid(root)
        if pid is not None and process_matches_httpd(pid, root):
            return pid
        time.sleep(POLL_DELAY)
    return None


def wait_for_shutdown(root: os.PathLike | str, attempts: int) -> None:
    """Poll until Apache is gone; raise if it outlives ``attempts`` polls."""
    for _ in range(attempts):
        if current_apache_pid(root) is None:
            return
        time.sleep(POLL_DELAY)
    raise WlampctlError("Apache process did not exit in time")


def kill_process_tree(pid: int) -> None:
    """Forcefully terminate ``pid`` and its children with taskkill."""
    try:
        result = subprocess.run(
            ["taskkill", "/PID", str(pid), "/F", "/T"],
            **_no_window(),
        )
    except OSError as exc:
        raise WlampctlError("failed to invoke taskkill") from exc
    if result.returncode != 0:
        raise WlampctlError(f"taskkill returned exit code {result.returncode}")