"""Apache subcommands: project configuration and process control."""

from __future__ import annotations

import argparse
import os
import re
import socket
import subprocess
import sys
import threading
import time
from datetime import datetime
from pathlib import Path

from wlampctl.helpers import (
    CREATE_NO_WINDOW,
    SHUTDOWN_POLL_ATTEMPTS,
    STARTUP_POLL_ATTEMPTS,
    WlampctlError,
    cleanup_pid_file,
    current_apache_pid,
    exec_and_first_line,
    httpd_path,
    kill_process_tree,
    wait_for_apache_pid,
    wait_for_shutdown,
)
from wlampctl.status import fmt_duration_short, parse_duration, status_once

PROJECT_CONFIG_NAME = ".wlampctl-project.conf"
ACTIVE_CONF_NAME = "wlampctl-active.conf"
INCLUDE_DIRECTIVE = 'Include "conf/extra/wlampctl-active.conf"'
DEFAULT_PORT = 8080
COMMON_PORTS = (80, 8080, 3000, 8000, 8888, 5000, 9000)
ADMIN_URL = "http://localhost/"

_UNSIGNED_RE = re.compile(r"\+?\d+")
_U16_MAX = 65535
_U64_MAX = 2**64 - 1
_FOREGROUND_POLL = 0.1
_RESTART_PAUSE = 0.5

_ACTIVE_VHOST_TEMPLATE = """\
# WlampCTL Active Project Configuration
# This file is automatically overwritten by 'wlampctl apache start'
# DO NOT EDIT MANUALLY.

Listen {port}

<VirtualHost *:{port}>
    DocumentRoot "{doc_root}"

    <Directory "{doc_root}">
        Options Indexes FollowSymLinks Includes ExecCGI
        AllowOverride All
        Require all granted
    </Directory>

    # Default error logging
    ErrorLog "logs/wlampctl-project-error.log"
    CustomLog "logs/wlampctl-project-access.log" common
</VirtualHost>
"""


def _no_window() -> dict:
    return {"creationflags": CREATE_NO_WINDOW} if os.name == "nt" else {}


def _parse_unsigned(text: str, limit: int) -> int | None:
    if not _UNSIGNED_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value <= limit else None


def _extra_dir(root: os.PathLike | str) -> Path:
    return Path(root) / "apache" / "conf" / "extra"


def _active_conf(root: os.PathLike | str) -> Path:
    return _extra_dir(root) / ACTIVE_CONF_NAME


# --- Configuration ---


def ensure_vhosts_include(root: os.PathLike | str) -> None:
    """Make httpd-vhosts.conf include the active project configuration."""
    vhosts = _extra_dir(root) / "httpd-vhosts.conf"
    if not vhosts.exists():
        raise WlampctlError(f"Standard XAMPP file not found: {vhosts}")
    content = vhosts.read_text(encoding="utf-8", errors="replace")
    if ACTIVE_CONF_NAME in content:
        return
    print("\u2139 First-run setup: Adding include directive to httpd-vhosts.conf")
    with vhosts.open("a", encoding="utf-8", newline="") as handle:
        handle.write("\n# WlampCTL Active Project Configuration\n")
        handle.write(f"{INCLUDE_DIRECTIVE}\n")


def read_project_config(path: os.PathLike | str) -> dict:
    """Read a project file into a dict with document_root, port and project_id.

    Only keys found in the file are present. An unparsable PORT reads as the
    default port; an unparsable PROJECT_ID is left out. Unreadable files give {}.
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return {}
    values: dict = {}
    for line in content.splitlines():
        if line.startswith("DOCUMENT_ROOT="):
            values["document_root"] = line[len("DOCUMENT_ROOT="):].strip()
        if line.startswith("PORT="):
            port = _parse_unsigned(line[len("PORT="):].strip(), _U16_MAX)
            values["port"] = DEFAULT_PORT if port is None else port
        if line.startswith("PROJECT_ID="):
            project_id = _parse_unsigned(line[len("PROJECT_ID="):].strip(), _U64_MAX)
            if project_id is not None:
                values["project_id"] = project_id
    return values


def normalize_apache_path(path: str) -> str:
    """Use forward slashes and drop any leading extended-length prefix."""
    normalized = str(path).replace("\\", "/")
    prefix = "//?/"
    while normalized.startswith(prefix):
        normalized = normalized[len(prefix):]
    return normalized


def _apache_running(root: os.PathLike | str) -> bool:
    try:
        return current_apache_pid(root) is not None
    except (WlampctlError, OSError):
        return False


def _prompt_port() -> str:
    try:
        return input("Enter a new port (or press Enter to exit): ")
    except EOFError:
        return ""


def resolve_and_save_config(
    root: os.PathLike | str, arg_root: str | None, arg_port: int | None
) -> tuple[str, int]:
    """Work out the document root and port, then save them to the project file.

    Arguments win over the project file in the current directory, which wins
    over the defaults.
    """
    cwd = Path.cwd()
    config_path = cwd / PROJECT_CONFIG_NAME

    final_root = str(cwd)
    final_port = DEFAULT_PORT
    project_id = int(time.time())

    if config_path.exists():
        saved = read_project_config(config_path)
        final_root = saved.get("document_root", final_root)
        final_port = saved.get("port", final_port)
        project_id = saved.get("project_id", project_id)
    else:
        final_port = find_free_port(DEFAULT_PORT)

    if arg_root is not None:
        resolved = cwd / arg_root
        try:
            final_root = str(resolved.resolve(strict=True))
        except OSError as exc:
            raise WlampctlError(f"DocumentRoot path does not exist: {resolved}") from exc

    if arg_port is not None:
        final_port = arg_port

    while not is_port_free(final_port):
        if _apache_running(root):
            break
        print(
            f"\u26a0 Warning: Port {final_port} appears to be in use "
            "by another system process."
        )
        answer = _prompt_port().strip()
        if not answer:
            raise WlampctlError("Operation cancelled by user.")
        port = _parse_unsigned(answer, _U16_MAX)
        if port is None:
            print("Invalid port number.")
        else:
            final_port = port

    apache_root = normalize_apache_path(final_root)
    content = (
        "# WlampCTL Project Configuration\n"
        f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        f"PROJECT_ID={project_id}\n"
        f"PORT={final_port}\n"
        f"DOCUMENT_ROOT={apache_root}\n"
    )
    try:
        config_path.write_text(content, encoding="utf-8", newline="")
    except OSError as exc:
        raise WlampctlError(f"Failed to save config to {config_path}") from exc

    return apache_root, final_port


def render_active_vhost(doc_root: str, port: int) -> str:
    """Return the VirtualHost configuration for a document root and port."""
    return _ACTIVE_VHOST_TEMPLATE.format(port=port, doc_root=doc_root)


def write_active_vhost(root: os.PathLike | str, doc_root: str, port: int) -> None:
    """Overwrite the active project configuration file."""
    active = _active_conf(root)
    try:
        active.write_text(render_active_vhost(doc_root, port), encoding="utf-8", newline="")
    except OSError as exc:
        raise WlampctlError(f"Failed to write active config to {active}") from exc
    print("\u2713 Active Configuration Set:")
    print(f"  Root: {doc_root}")
    print(f"  Port: {port}")


def find_free_port(start: int) -> int:
    """Return a free common port, else the first free one from ``start`` on."""
    for port in COMMON_PORTS:
        if is_port_free(port):
            return port
    for port in range(start, min(start + 1000, _U16_MAX) + 1):
        if is_port_free(port):
            return port
    return start


def is_port_free(port: int) -> bool:
    """Tell whether a TCP socket can be bound to 127.0.0.1:``port``."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))
    except (OSError, OverflowError):
        return False
    return True


def get_active_port(root: os.PathLike | str) -> int | None:
    """Return the port of the first Listen line in the active configuration."""
    active = _active_conf(root)
    if not active.exists():
        return None
    try:
        content = active.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("Listen "):
            return _parse_unsigned(stripped[len("Listen "):].strip(), _U16_MAX)
    return None


def get_local_ip() -> str | None:
    """Return the address of the interface used for outbound traffic."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.bind(("0.0.0.0", 0))
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return None


# --- Process control ---


def _run_foreground(root: Path, httpd: Path) -> None:
    print("Starting Apache in foreground. Press Enter to stop.")
    try:
        child = subprocess.Popen([str(httpd)], cwd=root, stdin=subprocess.DEVNULL)
    except OSError as exc:
        raise WlampctlError(f"failed to spawn {httpd}") from exc

    enter_pressed = threading.Event()

    def wait_for_enter() -> None:
        try:
            sys.stdin.readline()
        except (OSError, ValueError):
            pass
        enter_pressed.set()

    threading.Thread(target=wait_for_enter, daemon=True).start()

    while True:
        code = child.poll()
        if code is not None:
            print(f"Apache exited with status {code}")
            cleanup_pid_file(root)
            if code != 0:
                raise WlampctlError("Apache exited with error")
            return
        if enter_pressed.is_set():
            print("Stopping Apache...")
            child.kill()
            child.wait()
            cleanup_pid_file(root)
            return
        time.sleep(_FOREGROUND_POLL)


def _run_background(root: Path, httpd: Path) -> None:
    try:
        subprocess.Popen([str(httpd)], cwd=root, **_no_window())
    except OSError as exc:
        raise WlampctlError(f"failed to spawn {httpd}") from exc
    pid = wait_for_apache_pid(root, STARTUP_POLL_ATTEMPTS)
    if pid is None:
        log = root / "apache" / "logs" / "error.log"
        raise WlampctlError(f"Apache failed to start \u2013 check logs at {log}")
    print(f"Apache started (PID {pid}).")


def start_apache_process(root: os.PathLike | str, output: bool) -> None:
    """Start httpd, in this terminal when ``output`` is set, else hidden."""
    root = Path(root)
    pid = current_apache_pid(root)
    if pid is not None:
        print(f"Apache is already running (PID {pid}).")
        print("Run 'lampctl apache restart' to apply new configuration.")
        return

    httpd = httpd_path(root)
    port = get_active_port(root)
    if port is None:
        port = 80

    print("\nServer running at:")
    print(f"  \u279c  Local:   http://localhost:{port}/")
    ip = get_local_ip()
    if ip is not None:
        print(f"  \u279c  Network: http://{ip}:{port}/")
    print()

    if output:
        _run_foreground(root, httpd)
    else:
        _run_background(root, httpd)


def stop_apache(root: os.PathLike | str) -> None:
    """Stop the running Apache and remove its PID file."""
    pid = current_apache_pid(root)
    if pid is None:
        print("Apache is already stopped.")
        cleanup_pid_file(root)
        return
    kill_process_tree(pid)
    wait_for_shutdown(root, SHUTDOWN_POLL_ATTEMPTS)
    cleanup_pid_file(root)
    print(f"Apache stopped (PID {pid}).")


def restart_apache(root: os.PathLike | str) -> None:
    """Stop Apache and start it again in the background."""
    stop_apache(root)
    time.sleep(_RESTART_PAUSE)
    start_apache_process(root, False)


def _open_that(target: str, what: str) -> None:
    try:
        if hasattr(os, "startfile"):
            os.startfile(target)
        elif sys.platform == "darwin":
            subprocess.run(["open", target], check=True)
        else:
            subprocess.run(["xdg-open", target], check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise WlampctlError(f"failed to open {what}") from exc


def open_logs(root: os.PathLike | str) -> None:
    """Open Apache's error log in the default viewer."""
    log_path = Path(root) / "apache" / "logs" / "error.log"
    if not log_path.exists():
        raise WlampctlError(f"{log_path} does not exist")
    _open_that(str(log_path), "Apache error log")


def open_admin() -> None:
    """Open the local server in the default browser."""
    _open_that(ADMIN_URL, ADMIN_URL)


def open_config(root: os.PathLike | str) -> None:
    """Open httpd.conf in the default editor."""
    conf = Path(root) / "apache" / "conf" / "httpd.conf"
    if not conf.exists():
        raise WlampctlError(f"{conf} does not exist")
    _open_that(str(conf), "httpd.conf")


def get_apache_version(root: os.PathLike | str) -> str | None:
    """Return the first line of ``httpd -v``, if it can be run."""
    return exec_and_first_line(Path(root) / "apache" / "bin" / "httpd.exe", ["-v"])


# --- Command line ---


def _port_arg(text: str) -> int:
    port = _parse_unsigned(text, _U16_MAX)
    if port is None:
        raise argparse.ArgumentTypeError(f"invalid port: {text}")
    return port


def add_apache_parser(subparsers) -> argparse.ArgumentParser:
    """Add the ``apache`` command and its actions to ``subparsers``."""
    apache = subparsers.add_parser(
        "apache", help="Apache operations (start/stop/restart/logs/admin/config)"
    )
    actions = apache.add_subparsers(dest="action", required=True, metavar="ACTION")

    start = actions.add_parser(
        "start", help="Start Apache with the current project configuration"
    )
    start.add_argument(
        "--output", action="store_true", help="Print Apache output in this terminal"
    )
    start.add_argument(
        "--DocumentRoot",
        dest="document_root",
        help="Document root path for the virtual host (auto-registers if needed)",
    )
    start.add_argument(
        "--port", type=_port_arg, help="Port to listen on (auto-assigns if not specified)"
    )

    actions.add_parser("stop", help="Stop Apache")
    actions.add_parser("restart", help="Restart Apache")

    status = actions.add_parser("status", help="Show running status (PID or stopped)")
    status.add_argument("--verbose", action="store_true", help="Verbose output")
    status.add_argument("--url", help="Health probe URL (http only)")
    status.add_argument("--since", help="Log window, e.g. 10m; accepted but not used yet")
    status.add_argument("--watch", help="Refresh interval, e.g. 2s, 500ms, 1m")

    register = actions.add_parser(
        "register",
        help="Register/Update configuration for this folder without starting Apache",
    )
    register.add_argument(
        "--DocumentRoot",
        dest="document_root",
        required=True,
        help="Document root path for the virtual host",
    )
    register.add_argument("--port", type=_port_arg, required=True, help="Port to listen on")

    actions.add_parser("logs", help="Open apache\\logs\\error.log in the default viewer")
    actions.add_parser("admin", help="Open http://localhost/ in the default browser")
    actions.add_parser("config", help="Open apache\\conf\\httpd.conf in the default editor")
    return apache


def _status(args: argparse.Namespace, root: Path) -> int:
    interval = parse_duration(args.watch) if args.watch is not None else None
    if interval is None:
        return status_once(root, args.verbose, args.url)
    while True:
        status_once(root, args.verbose, args.url)
        print(f"-- refresh in {fmt_duration_short(interval)} --")
        time.sleep(interval)


def handle_apache(args: argparse.Namespace, root: os.PathLike | str) -> int:
    """Run the apache action in ``args``; return the process exit code."""
    root = Path(root)
    action = args.action
    if action == "start":
        ensure_vhosts_include(root)
        doc_root, port = resolve_and_save_config(root, args.document_root, args.port)
        write_active_vhost(root, doc_root, port)
        start_apache_process(root, args.output)
    elif action == "stop":
        stop_apache(root)
    elif action == "restart":
        restart_apache(root)
    elif action == "status":
        return _status(args, root)
    elif action == "register":
        ensure_vhosts_include(root)
        doc_root, port = resolve_and_save_config(root, args.document_root, args.port)
        write_active_vhost(root, doc_root, port)
    elif action == "logs":
        open_logs(root)
    elif action == "admin":
        open_admin()
    elif action == "config":
        open_config(root)
    else:
        raise WlampctlError(f"unknown apache action: {action}")
    return 0