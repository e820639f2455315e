import importlib.util
import os
import threading
import time
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


pytestmark = pytest.mark.skipif(
    os.getenv("ENOKI_E2E_PLAYWRIGHT") != "1",
    reason=(
        "Playwright E2E tests are opt-in. Set ENOKI_E2E_PLAYWRIGHT=1 and run "
        "`python -m playwright install` to enable."
    ),
)


def _start_bridge_in_thread(port: int = 8791) -> str:
    args = SimpleNamespace(
        backend_url="http://127.0.0.1:7071",
        client_id="test-client-id.apps.googleusercontent.com",
        func_key=None,
        env_file=".env",
        env_defaults=cli.BridgeEnvDefaults(),
        timeout=30,
        eject_delay=0.0,
        host="127.0.0.1",
        port=port,
        open_browser=False,
        browser="default",
    )

    thread = threading.Thread(
        target=cli.handle_serve,
        args=(args,),
        daemon=True,
    )
    thread.start()

    base_url = f"http://127.0.0.1:{port}"
    # Best-effort wait for the dev server to come up.
    time.sleep(1.5)
    return base_url


def test_bridge_page_shows_idle_message_with_playwright() -> None:
    try:
        from playwright.sync_api import sync_playwright  # type: ignore[import]
    except Exception:  # pragma: no cover - environment-specific
        pytest.skip("playwright not available in this environment")

    base_url = _start_bridge_in_thread()

    with sync_playwright() as p:
        browser = p.chromium.launch()
        page = browser.new_page()
        page.goto(base_url, wait_until="load")
        assert page.title() == "Enoki Bridge"
        page.wait_for_function(
            "document.getElementById('status-message').textContent.includes('Obsidian plugin')"
        )
        browser.close()
