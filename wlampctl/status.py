"""Apache status reporting: process, ports, service, config and health."""

from __future__ import annotations

import os
import re
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

from wlampctl.helpers import (
    CREATE_NO_WINDOW,
    WlampctlError,
    current_apache_pid,
    httpd_path,
)

DEFAULT_PROBE_URL = "http://localhost/server-status?auto"
PROBE_TIMEOUT = 1.5
SERVICE_CANDIDATES = ("Apache2.4", "Apache24", "Apache2.2", "ApacheHTTPServer")

_UNSIGNED_RE = re.compile(r"\+?\d+")


def _no_window() -> dict:
    return {"creationflags": CREATE_NO_WINDOW} if os.name == "nt" else {}


def _parse_unsigned(text: str, limit: int) -> int | None:
    if not _UNSIGNED_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value <= limit else None


@dataclass
class ConfigCheck:
    """Outcome of ``httpd -t``."""

    ok: bool
    detail: str | None = None


@dataclass
class ServiceInfo:
    """State of a Windows service as reported by ``sc``."""

    name: str | None = None
    state: str | None = None
    start_type: str | None = None


def status_once(root: os.PathLike | str, verbose: bool, probe_url: str | None) -> int:
    """Print Apache's status once and return the exit code.

    Exit codes: 0 healthy, 1 warning/degraded, 3 error.
    """
    pid = current_apache_pid(root)
    httpd = httpd_path(root)
    config = httpd_config_ok(httpd)
    service = discover_service_state() or ServiceInfo()
    config_word = "OK" if config.ok else "ERROR"

    if pid is None:
        state = "Apache is not running"
        exit_code = 0
        if not config.ok:
            state = "failed"
            exit_code = 3
        print(f"Apache: {state.upper()}")
        if service.state is not None:
            print(f"Service: {service.state}")
        print(f"Config: httpd -t {config_word}")
        if not config.ok and verbose and config.detail is not None:
            print(f"ConfigError: {config.detail.strip()}")
        return exit_code

    uptime = get_process_uptime_seconds(pid) or 0
    try:
        ports = ports_for_pid(pid)
    except WlampctlError:
        ports = []

    health_ok: bool | None = None
    health_detail: str | None = None
    url = probe_url if probe_url is not None else DEFAULT_PROBE_URL
    if url.startswith("http://"):
        try:
            code, elapsed_ms = http_probe(url, PROBE_TIMEOUT)
        except (WlampctlError, OSError) as exc:
            health_ok = False
            health_detail = f"GET {url} failed: {exc}"
        else:
            health_ok = code == 200
            health_detail = f"GET {url} {code} ({elapsed_ms} ms)"
    elif verbose:
        health_detail = f"Skipping probe (HTTPS not supported in this minimal build): {url}"

    state = "running"
    exit_code = 0
    if not config.ok:
        state = "failed"
        exit_code = 3
    elif not ports or health_ok is False:
        state = "starting" if uptime < 10 else "degraded"
        exit_code = 1

    if service.state is not None and "stopped" in service.state.lower():
        state = "degraded"
        exit_code = max(exit_code, 1)

    healthy = "  \u2714 healthy" if exit_code == 0 else ""
    print(f"Apache: {state.upper()}  (pid {pid}){healthy}")
    ports_str = ", ".join(ports) if ports else "none"
    print(f"Uptime: {fmt_duration_human(uptime)}  | Ports: {ports_str}")

    if service.state is not None:
        start_type = service.start_type or "Unknown"
        name = service.name or "Apache2.4"
        print(f"Service: '{name}' = {service.state} ({start_type})")

    print(f"Config: httpd -t {config_word}")
    if not config.ok and verbose and config.detail is not None:
        print(f"ConfigError: {config.detail.strip()}")

    if health_detail is not None:
        print(f"Health: {health_detail}")

    return exit_code


def httpd_config_ok(httpd: os.PathLike | str) -> ConfigCheck:
    """Run ``httpd -t`` and collect its verdict and output."""
    try:
        result = subprocess.run([str(httpd), "-t"], capture_output=True, **_no_window())
    except OSError as exc:
        return ConfigCheck(ok=False, detail=f"failed to run httpd -t: {exc}")

    parts = [
        stream.decode("utf-8", errors="replace")
        for stream in (result.stdout, result.stderr)
        if stream
    ]
    message = "\n".join(parts)
    return ConfigCheck(
        ok=result.returncode == 0,
        detail=message if message.strip() else None,
    )


def get_process_uptime_seconds(pid: int) -> int | None:
    """Return how many whole seconds process ``pid`` has been running."""
    try:
        created = psutil.Process(pid).create_time()
    except (psutil.Error, ValueError, OSError):
        return None
    return max(int(time.time()) - int(created), 0)


def parse_netstat_ports(text: str, pid: int) -> list[str]:
    """Collect the distinct local addresses owned by ``pid`` in ``netstat -ano`` output."""
    wanted = str(pid)
    ports: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not (stripped.startswith("TCP") or stripped.startswith("UDP")):
            continue
        parts = stripped.split()
        if len(parts) < 4 or parts[-1] != wanted:
            continue
        local = parts[1]
        if local not in ports:
            ports.append(local)
    return ports


def ports_for_pid(pid: int) -> list[str]:
    """Return the local addresses that process ``pid`` listens on or uses."""
    try:
        result = subprocess.run(["netstat", "-ano"], capture_output=True, **_no_window())
    except OSError as exc:
        raise WlampctlError("failed to run netstat") from exc
    if result.returncode != 0:
        return []
    return parse_netstat_ports(result.stdout.decode("utf-8", errors="replace"), pid)


def discover_service_state() -> ServiceInfo | None:
    """Return the first known Apache service that ``sc`` reports on."""
    for name in SERVICE_CANDIDATES:
        info = query_service_sc(name)
        if info is not None:
            return info
    return None


def _sc_line(name: str, action: str, key: str) -> tuple[bool, str | None]:
    try:
        result = subprocess.run(["sc", action, name], capture_output=True, **_no_window())
    except OSError:
        return False, None
    if result.returncode != 0:
        return False, None
    text = result.stdout.decode("utf-8", errors="replace")
    line = next(
        (line.strip() for line in text.splitlines() if line.lstrip().upper().startswith(key)),
        None,
    )
    return True, line


def query_service_sc(name: str) -> ServiceInfo | None:
    """Query state and start type of service ``name``; None if it is unknown."""
    found, state_line = _sc_line(name, "query", "STATE")
    if not found:
        return None
    try:
        result = subprocess.run(["sc", "qc", name], capture_output=True, **_no_window())
    except OSError:
        return None
    if result.returncode != 0:
        return ServiceInfo(name=name, state=state_line, start_type=None)
    text = result.stdout.decode("utf-8", errors="replace")
    start_line = next(
        (
            line.strip()
            for line in text.splitlines()
            if line.lstrip().upper().startswith("START_TYPE")
        ),
        None,
    )
    return ServiceInfo(name=name, state=state_line, start_type=start_line)


def split_http_url(url: str) -> tuple[str, int, str]:
    """Split an ``http://`` URL into host, port and path."""
    if not url.startswith("http://"):
        raise WlampctlError("only http:// is supported")
    rest = url[len("http://"):]
    host_port, sep, tail = rest.partition("/")
    path = f"/{tail}" if sep else "/"
    host, sep, port_text = host_port.rpartition(":")
    if not sep:
        return host_port, 80, path
    port = _parse_unsigned(port_text, 65535)
    return host, 80 if port is None else port, path


def http_probe(url: str, timeout: float) -> tuple[int, int]:
    """Send a minimal HTTP/1.0 GET; return the status code and elapsed milliseconds.

    The status code is 0 when the response cannot be parsed.
    """
    host, port, path = split_http_url(url)
    try:
        addresses = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (OSError, UnicodeError) as exc:
        raise WlampctlError(f"DNS resolve failed: {exc}") from exc

    start = time.monotonic()
    last_error: OSError | None = None
    sock: socket.socket | None = None
    for family, socktype, proto, _, address in addresses:
        candidate = socket.socket(family, socktype, proto)
        candidate.settimeout(timeout)
        try:
            candidate.connect(address)
        except OSError as exc:
            candidate.close()
            last_error = exc
            continue
        sock = candidate
        break
    if sock is None:
        reason = str(last_error) if last_error is not None else "unknown error"
        raise WlampctlError(f"connect failed: {reason}")

    request = f"GET {path} HTTP/1.0\r\nHost: {host}\r\nConnection: close\r\n\r\n"
    chunks = []
    with sock:
        try:
            sock.sendall(request.encode())
        except OSError as exc:
            raise WlampctlError(f"request failed: {exc}") from exc
        try:
            while chunk := sock.recv(4096):
                chunks.append(chunk)
        except OSError:
            pass
    elapsed_ms = int((time.monotonic() - start) * 1000)

    text = b"".join(chunks).decode("utf-8", errors="replace")
    code = 0
    if text:
        fields = text.split("\n", 1)[0].split()
        if len(fields) >= 2:
            parsed = _parse_unsigned(fields[1], 65535)
            code = parsed if parsed is not None else 0
    return code, elapsed_ms


def parse_duration(s: str) -> float | None:
    """Parse '500ms', '2s', '1m' or a bare number of seconds into seconds."""
    text = s.strip().lower()
    for suffix, scale in (("ms", 0.001), ("s", 1), ("m", 60)):
        if text.endswith(suffix):
            value = _parse_unsigned(text[: -len(suffix)], 2**64 - 1)
            return None if value is None else value * scale
    value = _parse_unsigned(text, 2**64 - 1)
    return None if value is None else float(value)


def fmt_duration_human(secs: int) -> str:
    """Format whole seconds as e.g. '1h 2m 3s', '2m 3s' or '3s'."""
    hours, rem = divmod(int(secs), 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def fmt_duration_short(seconds: float) -> str:
    """Format a duration as whole seconds when possible, else milliseconds."""
    millis = round(seconds * 1000)
    if millis % 1000 == 0:
        return f"{millis // 1000}s"
    return f"{millis}ms"