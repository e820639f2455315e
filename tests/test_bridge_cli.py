import importlib.util
import json
from pathlib import Path
from types import SimpleNamespace
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
MODULE_PATH = PROJECT_ROOT / "enoki_bridge.py"
spec = importlib.util.spec_from_file_location("enoki_bridge", MODULE_PATH)
cli = importlib.util.module_from_spec(spec)
sys.modules["enoki_bridge"] = cli
assert spec.loader is not None  # for mypy/pylint
spec.loader.exec_module(cli)  # type: ignore[attr-defined]


def test_launch_url_encodes_nonce(capsys):
    cli.main(["launch-url", "--nonce", "a+b/c==", "--bridge-url", "https://bridge.example/"])
    url = capsys.readouterr().out.strip()
    assert url == "https://bridge.example/?source=obsidian&nonce=a%2Bb%2Fc%3D%3D"
    launch = cli.parse_launch_params(cli.urlparse.urlsplit(url).query)
    assert launch.nonce == "a+b/c=="


def test_launch_url_includes_redirect_and_prompt(capsys):
    cli.main(["launch-url", "--nonce", "abc", "--redirect", "--prompt", "select_account"])
    url = capsys.readouterr().out.strip()
    launch = cli.parse_launch_params(cli.urlparse.urlsplit(url).query)
    assert launch.redirect is True
    assert launch.prompt == "select_account"


def test_determine_env_file_variants():
    assert cli._determine_env_file(["report"]) == ".env"
    assert cli._determine_env_file(["--env-file", "bridge.env", "report"]) == "bridge.env"
    assert cli._determine_env_file(["-e=local.env", "report"]) == "local.env"


def test_load_env_defaults_reads_values(tmp_path):
    env_file = tmp_path / ".env.local"
    env_file.write_text(
        'backend_url="https://enoki-func.azurewebsites.net"\n'
        'google_client_id="cid.apps.googleusercontent.com"\n'
        'func_key="secret"\neject_delay="0.5"\n'
    )
    defaults = cli._load_env_defaults(str(env_file))
    assert defaults.backend_url == "https://enoki-func.azurewebsites.net"
    assert defaults.google_client_id == "cid.apps.googleusercontent.com"
    assert defaults.func_key == "secret"
    assert defaults.eject_delay == 0.5


def test_load_env_defaults_without_file_uses_local_backend(tmp_path):
    defaults = cli._load_env_defaults(str(tmp_path / "missing.env"))
    assert defaults.backend_url == cli.DEFAULT_BACKEND_URL
    assert defaults.google_client_id is None


def test_load_env_defaults_rejects_bad_delay(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text('eject_delay="soon"\n')
    with pytest.raises(SystemExit):
        cli._load_env_defaults(str(env_file))


def _make_args(**overrides):
    defaults = dict(
        backend_url="https://enoki.example.net",
        client_id="cid.apps.googleusercontent.com",
        func_key="func-key",
        env_file=".env",
        env_defaults=cli.BridgeEnvDefaults(),
        timeout=5,
        id_token="tok1",
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def _stub_http(monkeypatch, exchange_status=200, post_callback=None):
    def fake_get(url, headers=None, timeout=0):
        return cli.HttpResponse(200, "text/javascript", "/* gsi */")

    def fake_post_json(url, data, headers=None, timeout=0):
        if post_callback is not None:
            post_callback(url, data)
        if url.endswith(cli.SESSION_EXCHANGE_PATH):
            if exchange_status != 200:
                return cli.HttpResponse(exchange_status, "application/json", '{"code":401}')
            payload = {"authenticationToken": "sess1"}
        else:
            payload = {"success": True, "salt": "42", "address": "0xDEAD"}
        return cli.HttpResponse(200, "application/json", json.dumps(payload))

    monkeypatch.setattr(cli, "_get", fake_get)
    monkeypatch.setattr(cli, "_post_json", fake_post_json)


def test_handle_report_passes_with_id_token(monkeypatch, capsys):
    _stub_http(monkeypatch)
    cli.handle_report(_make_args())
    out = capsys.readouterr().out
    assert "[PASS] Session exchange" in out
    assert "[PASS] Hydrate salt and address" in out
    assert "[PASS] Build Obsidian deeplink" in out
    assert "tok1" not in out


def test_handle_report_skips_backend_without_id_token(monkeypatch, capsys):
    posts = []
    _stub_http(monkeypatch, post_callback=lambda url, data: posts.append(url))
    cli.handle_report(_make_args(id_token=None))
    out = capsys.readouterr().out
    assert "[SKIP] Session exchange" in out
    assert "[SKIP] Hydrate salt and address" in out
    assert posts == []


def test_handle_report_fails_on_rejected_token(monkeypatch, capsys):
    posts = []
    _stub_http(monkeypatch, exchange_status=401, post_callback=lambda url, data: posts.append(url))
    with pytest.raises(SystemExit):
        cli.handle_report(_make_args())
    out = capsys.readouterr().out
    assert "[FAIL] Session exchange" in out
    assert "Hint: App Service rejected the Google ID token" in out
    assert posts == ["https://enoki.example.net/.auth/login/google"]


def test_handle_report_flags_missing_client_id(monkeypatch, capsys):
    _stub_http(monkeypatch)
    with pytest.raises(SystemExit):
        cli.handle_report(_make_args(client_id=None, id_token=None))
    assert "[FAIL] Load configuration from .env" in capsys.readouterr().out


def test_handle_exchange_prints_deeplink(monkeypatch, capsys):
    _stub_http(monkeypatch)
    cli.handle_exchange(_make_args())
    out = capsys.readouterr().out
    assert "obsidian://enoki-auth?jwt=tok1&azure_token=sess1&salt=42&address=0xDEAD" in out
    assert '"address": "0xDEAD"' in out


def test_main_exits_when_configuration_is_missing(tmp_path, monkeypatch):
    _stub_http(monkeypatch)
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--env-file", str(tmp_path / "none.env"), "exchange", "--id-token", "tok1"])
    assert excinfo.value.code == 1
