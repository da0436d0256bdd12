import argparse
import socket
from pathlib import Path

import pytest

from wlampctl.apache import (
    add_apache_parser,
    ensure_vhosts_include,
    get_active_port,
    get_apache_version,
    handle_apache,
    is_port_free,
    find_free_port,
    normalize_apache_path,
    open_config,
    open_logs,
    read_project_config,
    render_active_vhost,
    resolve_and_save_config,
    write_active_vhost,
)
from wlampctl.helpers import WlampctlError


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _make_root(tmp_path):
    root = tmp_path / "xampp"
    extra = root / "apache" / "conf" / "extra"
    extra.mkdir(parents=True)
    (extra / "httpd-vhosts.conf").write_text("# vhosts\n", encoding="utf-8")
    return root


def _top_parser():
    """Build a top-level parser and its sub-parser collection."""
    parser = argparse.ArgumentParser(prog="test")
    sub = parser.add_subparsers(dest="command", required=True)
    return parser, sub


@pytest.fixture
def busy_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def test_normalize_backslashes():
    assert normalize_apache_path("C:\\www\\site") == "C:/www/site"


def test_normalize_strips_extended_prefix():
    assert normalize_apache_path("\\\\?\\C:\\www") == "C:/www"


def test_render_active_vhost_contents():
    text = render_active_vhost("C:/www", 8081)
    assert "Listen 8081\n" in text
    assert "<VirtualHost *:8081>" in text
    assert 'DocumentRoot "C:/www"' in text
    assert '<Directory "C:/www">' in text
    assert 'ErrorLog "logs/wlampctl-project-error.log"' in text


def test_write_then_read_active_port(tmp_path, capsys):
    root = _make_root(tmp_path)
    write_active_vhost(root, "C:/www", 8123)
    assert get_active_port(root) == 8123
    out = capsys.readouterr().out
    assert "  Port: 8123" in out
    assert "  Root: C:/www" in out


def test_active_port_missing_file(tmp_path):
    assert get_active_port(tmp_path) is None


def test_active_port_invalid_first_listen(tmp_path):
    root = _make_root(tmp_path)
    conf = root / "apache" / "conf" / "extra" / "wlampctl-active.conf"
    conf.write_text("Listen nope\nListen 81\n", encoding="utf-8")
    assert get_active_port(root) is None


def test_read_project_config(tmp_path):
    path = tmp_path / "project.conf"
    path.write_text(
        "# comment\nPROJECT_ID=42\nPORT=abc\nDOCUMENT_ROOT= C:/www \n", encoding="utf-8"
    )
    assert read_project_config(path) == {
        "project_id": 42,
        "port": 8080,
        "document_root": "C:/www",
    }


def test_read_project_config_bad_id_is_dropped(tmp_path):
    path = tmp_path / "project.conf"
    path.write_text("PROJECT_ID=x\nPORT=81\n", encoding="utf-8")
    assert read_project_config(path) == {"port": 81}


def test_read_project_config_missing(tmp_path):
    assert read_project_config(tmp_path / "absent.conf") == {}


def test_ensure_vhosts_missing(tmp_path):
    with pytest.raises(WlampctlError, match="Standard XAMPP file not found"):
        ensure_vhosts_include(tmp_path)


def test_ensure_vhosts_is_idempotent(tmp_path):
    root = _make_root(tmp_path)
    ensure_vhosts_include(root)
    ensure_vhosts_include(root)
    text = (root / "apache" / "conf" / "extra" / "httpd-vhosts.conf").read_text(
        encoding="utf-8"
    )
    assert text.startswith("# vhosts\n")
    assert text.count('Include "conf/extra/wlampctl-active.conf"') == 1


def test_resolve_with_arguments_saves_config(tmp_path, monkeypatch):
    root = _make_root(tmp_path)
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    port = _free_port()
    doc_root, chosen = resolve_and_save_config(root, ".", port)
    assert chosen == port
    assert doc_root == normalize_apache_path(str(project.resolve()))
    saved = read_project_config(project / ".wlampctl-project.conf")
    assert saved["port"] == port
    assert saved["document_root"] == doc_root


def test_resolve_uses_saved_config(tmp_path, monkeypatch):
    root = _make_root(tmp_path)
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    port = _free_port()
    (project / ".wlampctl-project.conf").write_text(
        f"PROJECT_ID=42\nPORT={port}\nDOCUMENT_ROOT=C:/www\n", encoding="utf-8"
    )
    assert resolve_and_save_config(root, None, None) == ("C:/www", port)
    saved = read_project_config(project / ".wlampctl-project.conf")
    assert saved["project_id"] == 42


def test_resolve_missing_document_root(tmp_path, monkeypatch):
    root = _make_root(tmp_path)
    monkeypatch.chdir(tmp_path)
    with pytest.raises(WlampctlError, match="DocumentRoot path does not exist"):
        resolve_and_save_config(root, "does-not-exist", _free_port())


def test_resolve_busy_port_cancelled(tmp_path, monkeypatch, busy_port):
    root = _make_root(tmp_path)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("builtins.input", lambda prompt="": "")
    with pytest.raises(WlampctlError, match="Operation cancelled by user."):
        resolve_and_save_config(root, ".", busy_port)


def test_resolve_busy_port_prompts_again(tmp_path, monkeypatch, capsys, busy_port):
    root = _make_root(tmp_path)
    monkeypatch.chdir(tmp_path)
    replacement = _free_port()
    answers = iter(["abc", str(replacement)])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
    _, chosen = resolve_and_save_config(root, ".", busy_port)
    assert chosen == replacement
    assert "Invalid port number." in capsys.readouterr().out


def test_is_port_free_false_when_bound(busy_port):
    assert is_port_free(busy_port) is False


def test_find_free_port_returns_free_port():
    port = find_free_port(8080)
    assert is_port_free(port) is True


def test_apache_version_missing(tmp_path):
    assert get_apache_version(tmp_path) is None


def test_open_logs_missing(tmp_path):
    with pytest.raises(WlampctlError, match="does not exist"):
        open_logs(tmp_path)


def test_open_config_missing(tmp_path):
    with pytest.raises(WlampctlError, match="does not exist"):
        open_config(tmp_path)


def test_parser_start_arguments(tmp_path, monkeypatch):
    root = _make_root(tmp_path)
    project = tmp_path / "project"
    (project / "site").mkdir(parents=True)
    monkeypatch.chdir(project)
    port = _free_port()
    parser, sub = _top_parser()
    add_apache_parser(sub)
    args = parser.parse_args(
        ["apache", "start", "--output", "--DocumentRoot", "site", "--port", str(port)]
    )
    assert args.action == "start"
    assert args.output is True
    doc_root, chosen = resolve_and_save_config(root, args.document_root, args.port)
    assert chosen == port
    assert doc_root == normalize_apache_path(str((project / "site").resolve()))


def test_parser_start_defaults(tmp_path, monkeypatch):
    root = _make_root(tmp_path)
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    port = _free_port()
    (project / ".wlampctl-project.conf").write_text(
        f"PROJECT_ID=7\nPORT={port}\nDOCUMENT_ROOT=C:/www\n", encoding="utf-8"
    )
    parser, sub = _top_parser()
    add_apache_parser(sub)
    args = parser.parse_args(["apache", "start"])
    assert args.action == "start"
    assert args.output is False
    assert resolve_and_save_config(root, args.document_root, args.port) == (
        "C:/www",
        port,
    )


def test_parser_rejects_out_of_range_port(capsys):
    parser, sub = _top_parser()
    add_apache_parser(sub)
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args(["apache", "start", "--port", "70000"])
    assert excinfo.value.code == 2
    assert "70000" in capsys.readouterr().err


def test_parser_register_requires_arguments(capsys):
    parser, sub = _top_parser()
    add_apache_parser(sub)
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args(["apache", "register"])
    assert excinfo.value.code == 2
    assert "required" in capsys.readouterr().err


def test_handle_register_writes_active_conf(tmp_path, monkeypatch):
    root = _make_root(tmp_path)
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    port = _free_port()
    parser, sub = _top_parser()
    add_apache_parser(sub)
    args = parser.parse_args(
        ["apache", "register", "--DocumentRoot", ".", "--port", str(port)]
    )
    assert handle_apache(args, root) == 0
    assert get_active_port(root) == port
    vhosts = Path(root) / "apache" / "conf" / "extra" / "httpd-vhosts.conf"
    assert "wlampctl-active.conf" in vhosts.read_text(encoding="utf-8")