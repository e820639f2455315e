#!/usr/bin/env python3
"""Browser bridge that hands a Google sign-in back to Obsidian.

The Obsidian plugin cannot receive OAuth redirects, so it opens this bridge in
the user's browser with ``/?source=obsidian&nonce=...``. The bridge loads
Google Identity Services with exactly that nonce, trades the resulting ID token
for an Azure App Service session, hydrates the user's salt and address from the
Function App and finally navigates to an ``obsidian://enoki-auth`` deeplink
carrying all four values.

Run ``serve`` to host the bridge, ``launch-url`` to build the URL the plugin
opens, and ``report`` to check a backend with an ID token you already have.
"""
from __future__ import annotations

import argparse
import json
import logging
import secrets
import sys
import textwrap
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Protocol
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest
import webbrowser

from dotenv import dotenv_values
from flask import Flask, abort, jsonify, redirect, render_template_string, request, session, url_for

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env"
DEFAULT_BACKEND_URL = "http://localhost:7071"
LAUNCH_SOURCE = "obsidian"
PROVIDER_NAME = "google"
DEEPLINK_PROTOCOL = "obsidian"
DEEPLINK_CALLBACK = "enoki-auth"
GIS_SCRIPT_URL = "https://accounts.google.com/gsi/client"
SESSION_EXCHANGE_PATH = "/.auth/login/google"
HYDRATION_PATH = "/api/auth/bridge"
SESSION_TOKEN_FIELD = "authenticationToken"
SESSION_HEADER = "X-ZUMO-AUTH"
FUNCTION_KEY_HEADER = "x-functions-key"
EJECT_DELAY_SECONDS = 2.0
FLOW_TTL_SECONDS = 15 * 60
BUTTON_CONTAINER = "google-signin-button"
BUTTON_OPTIONS = {
    "type": "standard",
    "theme": "outline",
    "size": "large",
    "text": "signin_with",
    "shape": "rectangular",
    "width": "300",
    "locale": "en",
}
IDLE_MESSAGE = (
    "This page bridges authentication for Obsidian. "
    "Please initiate login from the Obsidian plugin."
)
BRIDGE_PAGE_HTML = textwrap.dedent(
    """
    <!doctype html>
    <html lang="en">
    <head>
      <meta charset="utf-8" />
      <meta name="referrer" content="no-referrer" />
      <meta name="viewport" content="width=device-width, initial-scale=1" />
      <title>Enoki Bridge</title>
      <style>
        body { font-family: sans-serif; margin: 0; min-height: 100vh; display: flex; align-items: center; justify-content: center; background: #f7f7f7; }
        .card { background: white; border-radius: 8px; padding: 2rem; max-width: 420px; text-align: center; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
        .helper-text { font-size: 0.85rem; color: #666; }
        .error-box { color: #a00; }
        .error-detail { font-size: 0.8rem; white-space: pre-wrap; word-break: break-word; }
        .google-signin-container { display: flex; justify-content: center; margin-top: 1.5rem; min-height: 50px; }
        .loader { margin: 1rem auto; width: 32px; height: 32px; border: 4px solid #ddd; border-top-color: #0070f3; border-radius: 50%; animation: spin 1s linear infinite; }
        .success-icon { font-size: 2rem; color: #0a0; }
        .btn-primary { display: inline-block; margin-top: 1rem; padding: 10px 20px; background: #0070f3; color: white; text-decoration: none; border: none; border-radius: 5px; cursor: pointer; }
        @keyframes spin { to { transform: rotate(360deg); } }
      </style>
    </head>
    <body>
      <main class="card">
        <h1>Enoki Bridge</h1>
        <p id="status-message" class="status-message">Initializing Bridge...</p>
        <div id="loader" class="loader" hidden></div>
        <div id="google-signin-button" class="google-signin-container" hidden></div>
        <div id="error-box" class="error-box" hidden>
          <p id="error-detail" class="error-detail"></p>
          <p class="helper-text">Please close this window and try again from the Obsidian plugin.</p>
          <button id="close-window" class="btn-primary">OK</button>
        </div>
        <div id="success-box" hidden>
          <div class="success-icon">&#10003;</div>
          <a id="manual-link" class="btn-primary" href="#">Open Obsidian</a>
          <p class="helper-text">You may close this tab after Obsidian opens.</p>
        </div>
        <p id="helper-text" class="helper-text"></p>
      </main>

      <script>
        const PAGE_FLOW = {{ flow_id|tojson }};
        const LAUNCH_REJECTED = {{ launch_rejected|tojson }};
        const POLL_INTERVAL_MS = 500;
        const BUSY = new Set(['initializing', 'authenticating', 'exchanging', 'hydrating', 'ejecting']);
        const TERMINAL = new Set(['success', 'error']);
        const HELPER_TEXT = {
          idle: 'Waiting for connection from Obsidian plugin...',
          ready: 'Sign in to connect your wallet',
        };
        let flowId = null;
        let uxMode = 'popup';
        let lastStatus = 'idle';
        let buttonRendered = false;
        let ejected = false;

        function forgetTabFlow() {
          sessionStorage.removeItem('bridge_flow');
          sessionStorage.removeItem('bridge_source');
        }

        function attachFlow() {
          if (LAUNCH_REJECTED) {
            forgetTabFlow();
            return null;
          }
          if (PAGE_FLOW) {
            forgetTabFlow();
            return PAGE_FLOW;
          }
          // Only set by this tab before it left for Google's redirect sign-in.
          const resumed = sessionStorage.getItem('bridge_flow');
          const source = sessionStorage.getItem('bridge_source');
          forgetTabFlow();
          return resumed && source === 'obsidian' ? resumed : null;
        }

        function flowPath(action) {
          return '/flow/' + encodeURIComponent(flowId) + '/' + action;
        }

        function show(id, visible) {
          document.getElementById(id).hidden = !visible;
        }

        function sendSignal(path) {
          if (navigator.sendBeacon) {
            navigator.sendBeacon(path);
          } else {
            fetch(path, { method: 'POST', credentials: 'same-origin', keepalive: true });
          }
        }

        function loadGoogleScript(src) {
          return new Promise((resolve, reject) => {
            if (window.google && window.google.accounts && window.google.accounts.id) {
              resolve();
              return;
            }
            const script = document.createElement('script');
            script.src = src;
            script.async = true;
            script.defer = true;
            script.onload = () => resolve();
            script.onerror = () => reject(new Error('Failed to load ' + src));
            document.head.appendChild(script);
          });
        }

        async function renderProvider(provider) {
          await loadGoogleScript(provider.script_url);
          const clientConfig = Object.assign({}, provider.client_config);
          if (clientConfig.ux_mode !== 'redirect') {
            clientConfig.callback = (response) => {
              fetch(provider.login_uri, {
                method: 'POST',
                credentials: 'same-origin',
                headers: { 'Content-Type': 'application/json' },
                body: JSON.stringify({ credential: (response && response.credential) || '' }),
              });
            };
          }
          google.accounts.id.initialize(clientConfig);
          const container = document.getElementById(provider.button.container);
          container.textContent = '';
          const options = Object.assign({}, provider.button.options, {
            click_listener: () => sendSignal(flowPath('interaction')),
          });
          google.accounts.id.renderButton(container, options);
        }

        function render(payload) {
          const state = payload.state;
          lastStatus = state.status;
          document.getElementById('status-message').textContent = state.message;
          document.getElementById('helper-text').textContent = HELPER_TEXT[state.status] || '';
          document.getElementById('error-detail').textContent = state.error || '';
          show('loader', BUSY.has(state.status));
          show('google-signin-button', state.status === 'ready');
          show('error-box', state.status === 'error');
          show('success-box', state.status === 'success');
          if (state.deeplink) {
            document.getElementById('manual-link').href = state.deeplink;
          }
          if (payload.provider) {
            uxMode = payload.provider.client_config.ux_mode || 'popup';
            if (state.status === 'ready' && !buttonRendered) {
              buttonRendered = true;
              renderProvider(payload.provider).catch((err) => {
                document.getElementById('helper-text').textContent = String(err);
              });
            }
          }
          if (payload.navigate_to && !ejected) {
            ejected = true;
            window.location.href = payload.navigate_to;
          }
          if (TERMINAL.has(state.status)) {
            forgetTabFlow();
          }
        }

        async function poll() {
          try {
            const path = flowId ? flowPath('state') : '/flow/state';
            const resp = await fetch(path, { credentials: 'same-origin', cache: 'no-store' });
            const payload = await resp.json();
            flowId = payload.flow;
            render(payload);
            if (!flowId || TERMINAL.has(payload.state.status)) {
              return;
            }
          } catch (err) {
            console.warn('Bridge state poll failed', err);
          }
          setTimeout(poll, POLL_INTERVAL_MS);
        }

        window.addEventListener('pagehide', () => {
          if (!flowId || TERMINAL.has(lastStatus)) {
            return;
          }
          // Leaving for Google's redirect sign-in resumes the same flow.
          if (uxMode === 'redirect' && (lastStatus === 'ready' || lastStatus === 'authenticating')) {
            sessionStorage.setItem('bridge_flow', flowId);
            sessionStorage.setItem('bridge_source', 'obsidian');
            return;
          }
          forgetTabFlow();
          sendSignal(flowPath('teardown'));
        });
        document.getElementById('close-window').addEventListener('click', () => window.close());
        flowId = attachFlow();
        poll();
      </script>
    </body>
    </html>
    """
)


class BridgeStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    AUTHENTICATING = "authenticating"
    EXCHANGING = "exchanging"
    HYDRATING = "hydrating"
    EJECTING = "ejecting"
    SUCCESS = "success"
    ERROR = "error"


STATUS_MESSAGES = {
    BridgeStatus.IDLE: IDLE_MESSAGE,
    BridgeStatus.INITIALIZING: "Loading Google Sign-In...",
    BridgeStatus.READY: "Click the button below to sign in with Google",
    BridgeStatus.AUTHENTICATING: "Authenticating with Google...",
    BridgeStatus.EXCHANGING: "Securing session with Azure...",
    BridgeStatus.HYDRATING: "Retrieving wallet data...",
    BridgeStatus.EJECTING: "Authentication successful. Opening Obsidian...",
    BridgeStatus.SUCCESS: "If Obsidian did not open, click the button below.",
    BridgeStatus.ERROR: "Authentication failed",
}

# Forward-only; error is the one exit available from every non-terminal state.
_TRANSITIONS = {
    BridgeStatus.IDLE: {BridgeStatus.INITIALIZING, BridgeStatus.ERROR},
    BridgeStatus.INITIALIZING: {BridgeStatus.READY, BridgeStatus.ERROR},
    BridgeStatus.READY: {BridgeStatus.AUTHENTICATING, BridgeStatus.ERROR},
    BridgeStatus.AUTHENTICATING: {BridgeStatus.EXCHANGING, BridgeStatus.ERROR},
    BridgeStatus.EXCHANGING: {BridgeStatus.HYDRATING, BridgeStatus.ERROR},
    BridgeStatus.HYDRATING: {BridgeStatus.EJECTING, BridgeStatus.ERROR},
    BridgeStatus.EJECTING: {BridgeStatus.SUCCESS, BridgeStatus.ERROR},
    BridgeStatus.SUCCESS: set(),
    BridgeStatus.ERROR: set(),
}
TERMINAL_STATUSES = frozenset({BridgeStatus.SUCCESS, BridgeStatus.ERROR})


class BridgeError(RuntimeError):
    """Failure that ends a bridge flow in the ``error`` state.

    ``message`` is safe to show to the user; ``detail`` is the diagnostic.
    """

    message = "Authentication failed"

    def __init__(self, detail: str, message: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if message is not None:
            self.message = message


class ProviderUnavailable(BridgeError):
    message = "Failed to load Google Sign-In"


class CallerContractViolation(BridgeError):
    message = "Failed to initialize authentication"


class AuthenticationAborted(BridgeError):
    message = "Authentication failed"


class NetworkFailure(BridgeError):
    message = "Could not reach the authentication backend"


class BackendRejected(BridgeError):
    def __init__(
        self,
        detail: str,
        status: int | None = None,
        body: str | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(detail, message=message)
        self.status = status
        self.body = body


class ExchangeFailed(BackendRejected):
    message = "Failed to secure a session with Azure"


class HydrationFailed(BackendRejected):
    message = "Failed to retrieve wallet data"


class FlowCancelled(Exception):
    """The page that owned the flow went away."""


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class LaunchRequest:
    source: str
    nonce: str
    redirect: bool = False
    prompt: str | None = None


@dataclass(frozen=True)
class InvalidLaunch:
    reason: str


@dataclass(frozen=True)
class DerivedIdentity:
    salt: str
    address: str


@dataclass(frozen=True, repr=False)
class AuthenticationResult:
    identity_token: str
    session_token: str
    salt: str
    address: str

    def __post_init__(self) -> None:
        missing = [
            name
            for name in ("identity_token", "session_token", "salt", "address")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"AuthenticationResult is missing {', '.join(missing)}")

    def __repr__(self) -> str:
        return (
            f"AuthenticationResult(identity_token=<{len(self.identity_token)} chars>, "
            f"session_token=<{len(self.session_token)} chars>, address={self.address!r})"
        )


@dataclass(frozen=True)
class BridgeConfig:
    backend_url: str
    google_client_id: str
    func_key: str | None = field(default=None, repr=False)
    provider_script_url: str = GIS_SCRIPT_URL
    deeplink_protocol: str = DEEPLINK_PROTOCOL
    deeplink_callback: str = DEEPLINK_CALLBACK
    eject_delay: float = EJECT_DELAY_SECONDS
    flow_ttl: float = FLOW_TTL_SECONDS
    timeout: int = 30
    secret_key: str | None = field(default=None, repr=False)

    @property
    def session_exchange_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}{SESSION_EXCHANGE_PATH}"

    @property
    def hydration_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}{HYDRATION_PATH}"

    def validate(self) -> None:
        if not self.backend_url:
            raise RuntimeError(
                "A backend URL is required. Set backend_url in the env file or pass --backend-url."
            )
        if not self.google_client_id:
            raise RuntimeError(
                "A Google OAuth client ID is required. Set google_client_id in the env file or pass --client-id."
            )


@dataclass(frozen=True)
class BridgeState:
    status: BridgeStatus
    message: str
    error: str | None = None
    data: AuthenticationResult | None = None

    def to_payload(self, config: BridgeConfig) -> Dict[str, Any]:
        deeplink = None
        if self.data is not None:
            deeplink = encode_deeplink(
                self.data, config.deeplink_protocol, config.deeplink_callback
            )
        return {
            "status": self.status.value,
            "message": self.message,
            "error": self.error,
            "deeplink": deeplink,
        }


@dataclass
class HttpResponse:
    status: int
    content_type: str
    payload: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class BridgeEnvDefaults:
    backend_url: str = DEFAULT_BACKEND_URL
    google_client_id: str | None = None
    func_key: str | None = None
    secret_key: str | None = None
    eject_delay: float = EJECT_DELAY_SECONDS


@dataclass
class ReportEntry:
    name: str
    status: str
    detail: str


class SkipStep(Exception):
    """Signal that the step was intentionally skipped."""


def _encode_query(params: Mapping[str, Any]) -> str:
    safe_params = [(k, v) for k, v in params.items() if v is not None]
    return urlparse.urlencode(safe_params, quote_via=urlparse.quote, safe="")


def _post_json(
    url: str, data: Mapping[str, Any], headers: Dict[str, str] | None, timeout: int
) -> HttpResponse:
    req = urlrequest.Request(
        url,
        data=json.dumps(data).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(headers or {}),
        },
        method="POST",
    )
    return _execute(req, timeout)


def _get(url: str, headers: Dict[str, str] | None, timeout: int) -> HttpResponse:
    req = urlrequest.Request(url, headers=headers or {})
    return _execute(req, timeout)


def _execute(req: urlrequest.Request, timeout: int) -> HttpResponse:
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            payload = resp.read().decode("utf-8", errors="replace")
            return HttpResponse(
                status=resp.status,
                content_type=resp.headers.get("Content-Type", ""),
                payload=payload,
            )
    except urlerror.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        content_type = exc.headers.get("Content-Type", "") if exc.headers else ""
        return HttpResponse(status=exc.code, content_type=content_type, payload=body)
    except (urlerror.URLError, OSError) as exc:
        raise NetworkFailure(f"Network error while calling {req.full_url}: {exc}") from exc


def _json_object(response: HttpResponse) -> Dict[str, Any] | None:
    try:
        parsed = json.loads(response.payload)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _truncate(text: str, limit: int = 200) -> str:
    text = text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


def encode_deeplink(
    result: AuthenticationResult,
    protocol: str = DEEPLINK_PROTOCOL,
    callback: str = DEEPLINK_CALLBACK,
) -> str:
    """Build the ``obsidian://`` URL that hands the sign-in to the desktop app.

    Every value is percent-encoded; none of them is assumed to be URL safe.
    """
    params = {
        "jwt": result.identity_token,
        "azure_token": result.session_token,
        "salt": result.salt,
        "address": result.address,
    }
    return f"{protocol}://{callback}?{_encode_query(params)}"


def parse_launch_params(query: str | Mapping[str, str]) -> LaunchRequest | InvalidLaunch:
    """Validate the parameters the Obsidian plugin opened the bridge with.

    ``query`` is either the raw query string or an already parsed mapping. Bad
    input is reported as :class:`InvalidLaunch`, never raised.
    """
    if isinstance(query, str):
        params: Dict[str, str] = {}
        for key, value in urlparse.parse_qsl(query.lstrip("?"), keep_blank_values=True):
            params.setdefault(key, value)
    else:
        params = dict(query)

    source = params.get("source")
    if source != LAUNCH_SOURCE:
        return InvalidLaunch(f"source must be {LAUNCH_SOURCE!r}, got {source!r}")
    nonce = params.get("nonce")
    if not nonce:
        return InvalidLaunch("missing required nonce parameter")
    return LaunchRequest(
        source=source,
        nonce=nonce,
        redirect=params.get("redirect") == "true",
        prompt=params.get("prompt") or None,
    )


class LaunchParams(Protocol):
    def read_launch_params(self) -> str | Mapping[str, str]: ...

    def clear_launch_params(self) -> None: ...


class Navigator(Protocol):
    def navigate(self, url: str) -> None: ...


class IdentityProvider(Protocol):
    def load_script(self) -> None: ...

    def initialize(
        self,
        nonce: str,
        on_credential: Callable[[str], None],
        options: Mapping[str, Any] | None = None,
    ) -> None: ...

    def render_button(self, container: str, options: Mapping[str, Any]) -> None: ...

    def cancel(self) -> None: ...


class ScriptLoader:
    """Fetches the provider's client script once and shares the outcome.

    Callers arriving while a load is in flight wait on the same future. A
    failed load is forgotten so that the next flow tries again.
    """

    def __init__(self, script_url: str, timeout: int) -> None:
        self.script_url = script_url
        self.timeout = timeout
        self._lock = threading.Lock()
        self._pending: Future | None = None

    @property
    def loaded(self) -> bool:
        with self._lock:
            pending = self._pending
        return pending is not None and pending.done() and pending.exception() is None

    def load(self) -> None:
        with self._lock:
            pending = self._pending
            owner = pending is None
            if owner:
                pending = self._pending = Future()
        if owner:
            try:
                self._fetch()
            except Exception as exc:  # noqa: BLE001
                with self._lock:
                    self._pending = None
                pending.set_exception(exc)
            else:
                pending.set_result(None)
        pending.result()

    def _fetch(self) -> None:
        try:
            response = _get(self.script_url, headers=None, timeout=self.timeout)
        except NetworkFailure as exc:
            raise ProviderUnavailable(
                f"Google Identity Services script failed to load: {exc.detail}"
            ) from exc
        if not response.ok:
            raise ProviderUnavailable(
                f"Google Identity Services script failed to load: "
                f"HTTP {response.status} from {self.script_url}"
            )
        logger.info(
            "Loaded provider script from %s (%d bytes)", self.script_url, len(response.payload)
        )


class GoogleIdentityAdapter:
    """Google Identity Services sign-in for a single bridge flow.

    The GIS script runs in the page; this side owns the client configuration
    the page initializes it with and routes the credential callback back into
    the flow. Whatever nonce :meth:`initialize` receives is forwarded as is.
    """

    def __init__(
        self, config: BridgeConfig, loader: ScriptLoader, login_uri: str | None = None
    ) -> None:
        self.config = config
        self.loader = loader
        self.login_uri = login_uri
        self._lock = threading.Lock()
        self._callback: Callable[[str], None] | None = None
        self._client_config: Dict[str, Any] | None = None
        self._button: Dict[str, Any] | None = None

    def load_script(self) -> None:
        self.loader.load()

    def initialize(
        self,
        nonce: str,
        on_credential: Callable[[str], None],
        options: Mapping[str, Any] | None = None,
    ) -> None:
        if not self.loader.loaded:
            raise ProviderUnavailable(
                "initialize() was called before the Google Identity Services script loaded.",
                message="Failed to initialize authentication",
            )
        if not nonce:
            raise CallerContractViolation(
                "initialize() requires the nonce supplied by the Obsidian plugin; none was given."
            )
        client_config: Dict[str, Any] = {"ux_mode": "popup"}
        client_config.update({k: v for k, v in (options or {}).items() if v is not None})
        client_config["client_id"] = self.config.google_client_id
        client_config["nonce"] = nonce
        if client_config["ux_mode"] == "redirect":
            if not self.login_uri:
                raise ProviderUnavailable(
                    "Redirect sign-in needs a login URI for Google to post the credential to.",
                    message="Failed to initialize authentication",
                )
            client_config["login_uri"] = self.login_uri
        with self._lock:
            self._client_config = client_config
            self._callback = on_credential

    def render_button(self, container: str, options: Mapping[str, Any]) -> None:
        with self._lock:
            if self._client_config is None:
                raise ProviderUnavailable(
                    "render_button() was called before initialize().",
                    message="Failed to initialize authentication",
                )
            self._button = {"container": container, "options": dict(options)}

    def cancel(self) -> None:
        with self._lock:
            self._callback = None
            self._client_config = None
            self._button = None

    def receive(self, credential: str) -> bool:
        with self._lock:
            callback = self._callback
        if callback is None:
            logger.warning("Dropping provider credential: sign-in is not initialized or was cancelled")
            return False
        callback(credential)
        return True

    def page_config(self) -> Dict[str, Any] | None:
        with self._lock:
            if self._client_config is None or self._button is None:
                return None
            return {
                "script_url": self.config.provider_script_url,
                "client_config": dict(self._client_config),
                "button": dict(self._button),
                "login_uri": self.login_uri,
            }


class SessionExchangeAdapter:
    """Trades the Google ID token for an App Service session token."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config

    def exchange(self, identity_token: str) -> str:
        url = self.config.session_exchange_url
        response = _post_json(
            url, {"id_token": identity_token}, headers=None, timeout=self.config.timeout
        )
        if not response.ok:
            raise ExchangeFailed(
                f"HTTP {response.status} from {url}: {_truncate(response.payload)}",
                status=response.status,
                body=response.payload,
            )
        body = _json_object(response)
        token = body.get(SESSION_TOKEN_FIELD) if body is not None else None
        if not isinstance(token, str) or not token:
            raise ExchangeFailed(
                f"Session exchange response from {url} has no {SESSION_TOKEN_FIELD}.",
                status=response.status,
                body=response.payload,
            )
        logger.info("Session exchange succeeded (session token length %d chars)", len(token))
        return token


class HydrationAdapter:
    """Fetches the user's salt and address from the bridge Function."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config

    def hydrate(self, identity_token: str, session_token: str) -> DerivedIdentity:
        headers = {SESSION_HEADER: session_token}
        if self.config.func_key:
            headers[FUNCTION_KEY_HEADER] = self.config.func_key
        response = _post_json(
            self.config.hydration_url,
            {"provider": PROVIDER_NAME, "idToken": identity_token},
            headers=headers,
            timeout=self.config.timeout,
        )
        body = _json_object(response)
        backend_message = body.get("message") if body is not None else None
        if not isinstance(backend_message, str) or not backend_message:
            backend_message = None

        if not response.ok:
            raise HydrationFailed(
                backend_message or f"HTTP {response.status}",
                status=response.status,
                body=response.payload,
            )
        if body is None or body.get("success") is not True:
            raise HydrationFailed(
                backend_message or "Invalid response from bridge service",
                status=response.status,
                body=response.payload,
            )
        salt = body.get("salt")
        address = body.get("address")
        if not isinstance(salt, str) or not salt or not isinstance(address, str) or not address:
            raise HydrationFailed(
                backend_message or "Bridge service response is missing salt or address",
                status=response.status,
                body=response.payload,
            )
        logger.info("Hydration succeeded for address %s", address)
        return DerivedIdentity(salt=salt, address=address)


class _OneShot:
    """Latched single-use signal shared by the flow worker and request threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._value: Any = None
        self._cancelled = False

    def set(self, value: Any = None) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._cancelled = True
            self._event.set()

    def wait(self) -> Any:
        self._event.wait()
        if self._cancelled:
            raise FlowCancelled()
        return self._value


class BridgeStateMachine:
    """Drives one Obsidian sign-in from launch parameters to the deeplink.

    :meth:`run` executes on the flow's worker thread and is the only writer of
    :attr:`state`. Request threads reach it through :meth:`press_button`, the
    credential callback handed to the identity provider, and :meth:`teardown`.
    """

    def __init__(
        self,
        config: BridgeConfig,
        launch_params: LaunchParams,
        identity: IdentityProvider,
        session_exchange: SessionExchangeAdapter,
        hydration: HydrationAdapter,
        navigator: Navigator,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._launch_params = launch_params
        self._identity = identity
        self._session_exchange = session_exchange
        self._hydration = hydration
        self._navigator = navigator
        self._sleep = sleep
        self._condition = threading.Condition()
        self._state = BridgeState(BridgeStatus.IDLE, IDLE_MESSAGE)
        self._generation = 0
        self._closed = False
        self._interaction = _OneShot()
        self._credential = _OneShot()

    @property
    def state(self) -> BridgeState:
        with self._condition:
            return self._state

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def wait_for_status(self, *statuses: BridgeStatus | str, timeout: float | None = None) -> BridgeState:
        wanted = {BridgeStatus(status) for status in statuses}
        with self._condition:
            self._condition.wait_for(lambda: self._state.status in wanted, timeout=timeout)
            return self._state

    def ingest(self) -> LaunchRequest | None:
        parsed = parse_launch_params(self._launch_params.read_launch_params())
        if isinstance(parsed, InvalidLaunch):
            logger.info("Launch parameters rejected (%s); waiting for Obsidian", parsed.reason)
            return None
        self._launch_params.clear_launch_params()
        logger.info(
            "Accepted launch from %s (redirect=%s, nonce length %d chars)",
            parsed.source,
            parsed.redirect,
            len(parsed.nonce),
        )
        return parsed

    def start(self) -> BridgeState:
        launch = self.ingest()
        if launch is None:
            return self.state
        return self.run(launch)

    def run(self, launch: LaunchRequest) -> BridgeState:
        try:
            self._authenticate(launch)
        except FlowCancelled:
            logger.info("Flow torn down while %s; stopping", self.state.status.value)
        except BridgeError as exc:
            self._fail(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected failure in bridge flow")
            self._fail(BridgeError(f"{type(exc).__name__}: {exc}", message="Unexpected bridge failure"))
        return self.state

    def press_button(self) -> None:
        if self._interaction.set():
            logger.info("Sign-in button pressed")

    def teardown(self) -> None:
        with self._condition:
            if self._closed:
                return
            self._closed = True
            self._generation += 1
            # The result never outlives its flow.
            if self._state.data is not None:
                self._state = replace(self._state, data=None)
        self._identity.cancel()
        self._interaction.cancel()
        self._credential.cancel()
        logger.info("Bridge flow torn down in state %s", self.state.status.value)

    def _authenticate(self, launch: LaunchRequest) -> None:
        if self.closed:
            raise FlowCancelled()
        self._transition(BridgeStatus.INITIALIZING)
        self._identity.load_script()
        with self._condition:
            generation = self._generation
        self._identity.initialize(
            launch.nonce,
            lambda credential: self._deliver_credential(generation, credential),
            {"ux_mode": "redirect" if launch.redirect else "popup", "prompt": launch.prompt},
        )
        self._identity.render_button(BUTTON_CONTAINER, BUTTON_OPTIONS)
        self._transition(BridgeStatus.READY)

        self._await(self._interaction)
        self._transition(BridgeStatus.AUTHENTICATING)
        credential = self._await(self._credential)
        if not credential:
            raise AuthenticationAborted("No credential received from Google")

        self._transition(BridgeStatus.EXCHANGING)
        session_token = self._session_exchange.exchange(credential)
        self._transition(BridgeStatus.HYDRATING)
        derived = self._hydration.hydrate(credential, session_token)
        result = AuthenticationResult(
            identity_token=credential,
            session_token=session_token,
            salt=derived.salt,
            address=derived.address,
        )

        self._transition(BridgeStatus.EJECTING, data=result)
        self._navigator.navigate(
            encode_deeplink(result, self.config.deeplink_protocol, self.config.deeplink_callback)
        )
        # Manual link is only offered once the eject delay has passed.
        self._sleep(self.config.eject_delay)
        self._transition(BridgeStatus.SUCCESS, data=result)

    def _deliver_credential(self, generation: int, credential: str) -> None:
        with self._condition:
            current = self._generation
        if generation != current:
            logger.warning(
                "Ignoring provider callback for a cancelled flow (generation %d, current %d)",
                generation,
                current,
            )
            return
        if not self._credential.set(credential):
            logger.warning("Ignoring repeated provider callback; a credential was already delivered")
            return
        # A credential implies the user went through the provider UI.
        self._interaction.set()

    def _await(self, signal: _OneShot) -> Any:
        value = signal.wait()
        if self.closed:
            raise FlowCancelled()
        return value

    def _transition(
        self,
        status: BridgeStatus,
        message: str | None = None,
        error: str | None = None,
        data: AuthenticationResult | None = None,
    ) -> None:
        with self._condition:
            current = self._state.status
            if status not in _TRANSITIONS[current]:
                raise InvalidTransition(f"Cannot move from {current.value} to {status.value}")
            self._state = BridgeState(
                status=status,
                message=message or STATUS_MESSAGES[status],
                error=error,
                data=data,
            )
            self._condition.notify_all()
        logger.info("Bridge flow %s -> %s", current.value, status.value)

    def _fail(self, exc: BridgeError) -> None:
        current = self.state.status
        if current in TERMINAL_STATUSES:
            logger.error("Bridge failure after reaching %s: %s", current.value, exc.detail)
            return
        logger.warning("Bridge flow failed while %s: %s (%s)", current.value, exc.message, exc.detail)
        self._transition(BridgeStatus.ERROR, message=exc.message, error=exc.detail)


class RequestLaunchParams:
    """Launch parameters of the current request.

    Clearing only forgets them here; the caller strips them from the address
    bar by redirecting once a launch is accepted.
    """

    def __init__(self, args: Mapping[str, str]) -> None:
        self._args = dict(args)

    def read_launch_params(self) -> Mapping[str, str]:
        return self._args

    def clear_launch_params(self) -> None:
        self._args = {}


class PageNavigator:
    """Hands the ejection target to the polling page, which navigates to it."""

    def __init__(self) -> None:
        self.target: str | None = None

    def navigate(self, url: str) -> None:
        self.target = url

    def clear(self) -> None:
        self.target = None


@dataclass
class BridgeFlow:
    flow_id: str
    owner: str
    machine: BridgeStateMachine
    identity: GoogleIdentityAdapter
    navigator: PageNavigator
    created_at: float = field(default_factory=time.monotonic)
    worker: threading.Thread | None = None

    def start(self, launch: LaunchRequest) -> None:
        self.worker = threading.Thread(
            target=self.machine.run,
            args=(launch,),
            name=f"bridge-flow-{self.flow_id[:8]}",
            daemon=True,
        )
        self.worker.start()

    def close(self) -> None:
        self.machine.teardown()
        self.navigator.clear()


class FlowRegistry:
    """In-memory flows keyed by id.

    Expired flows are closed whenever the registry is touched, so a flow that
    no page ever finishes still loses its tokens after ``ttl`` seconds.
    """

    def __init__(self, ttl: float) -> None:
        self.ttl = ttl
        self._lock = threading.Lock()
        self._flows: Dict[str, BridgeFlow] = {}

    def __len__(self) -> int:
        self._close(self._take_expired())
        with self._lock:
            return len(self._flows)

    def add(self, flow: BridgeFlow) -> None:
        expired = self._take_expired()
        with self._lock:
            self._flows[flow.flow_id] = flow
        self._close(expired)

    def get(self, flow_id: str | None) -> BridgeFlow | None:
        self._close(self._take_expired())
        if not flow_id:
            return None
        with self._lock:
            return self._flows.get(flow_id)

    def discard(self, flow_id: str | None) -> BridgeFlow | None:
        if not flow_id:
            return None
        with self._lock:
            flow = self._flows.pop(flow_id, None)
        if flow is not None:
            flow.close()
        return flow

    def discard_all(self) -> None:
        with self._lock:
            flows = list(self._flows.values())
            self._flows.clear()
        for flow in flows:
            flow.close()

    def _take_expired(self) -> List[BridgeFlow]:
        now = time.monotonic()
        with self._lock:
            expired = [
                flow_id
                for flow_id, existing in self._flows.items()
                if now - existing.created_at > self.ttl
            ]
            return [self._flows.pop(flow_id) for flow_id in expired]

    def _close(self, flows: List[BridgeFlow]) -> None:
        for flow in flows:
            flow.close()
        if flows:
            logger.info("Pruned %d expired bridge flow(s)", len(flows))


def create_app(config: BridgeConfig, loader: ScriptLoader | None = None) -> Flask:
    """Build the bridge web service.

    The cookie session only identifies the browser (``bridge_owner``) and
    hands a freshly launched flow to the next page render (``bridge_handoff``).
    From then on the flow id lives in that page alone, so other tabs and
    rejected relaunches never see it.
    """
    config.validate()
    app = Flask(__name__)
    app.secret_key = config.secret_key or secrets.token_hex(32)
    app.config.update(SESSION_COOKIE_HTTPONLY=True, SESSION_COOKIE_SAMESITE="Lax")
    loader = loader or ScriptLoader(config.provider_script_url, config.timeout)
    registry = FlowRegistry(config.flow_ttl)
    app.extensions["enoki_bridge"] = registry

    def owned_flow(flow_id: str | None) -> BridgeFlow | None:
        flow = registry.get(flow_id)
        if flow is None:
            return None
        owner = session.get("bridge_owner")
        if not isinstance(owner, str) or not secrets.compare_digest(flow.owner, owner):
            logger.warning("Flow %s requested from another browser session", flow.flow_id[:8])
            return None
        return flow

    def render_page(flow_id: str | None = None, launch_rejected: bool = False) -> str:
        return render_template_string(
            BRIDGE_PAGE_HTML, flow_id=flow_id, launch_rejected=launch_rejected
        )

    def idle_payload() -> Dict[str, Any]:
        idle = BridgeState(BridgeStatus.IDLE, IDLE_MESSAGE)
        return {"flow": None, "state": idle.to_payload(config), "provider": None, "navigate_to": None}

    @app.after_request
    def harden(response: Any) -> Any:
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/")
    def index() -> Any:
        if not request.args:
            flow = owned_flow(session.pop("bridge_handoff", None))
            return render_page(flow.flow_id if flow is not None else None)
        flow_id = secrets.token_urlsafe(24)
        launch_params = RequestLaunchParams(request.args.to_dict())
        identity = GoogleIdentityAdapter(
            config, loader, login_uri=url_for("credential", flow_id=flow_id, _external=True)
        )
        navigator = PageNavigator()
        machine = BridgeStateMachine(
            config,
            launch_params,
            identity,
            SessionExchangeAdapter(config),
            HydrationAdapter(config),
            navigator,
        )
        launch = machine.ingest()
        if launch is None:
            unclaimed = owned_flow(session.pop("bridge_handoff", None))
            if unclaimed is not None:
                registry.discard(unclaimed.flow_id)
            return render_page(launch_rejected=True)
        # A flow no page has picked up yet is replaced; rendered flows belong to their tab.
        unclaimed = owned_flow(session.get("bridge_handoff"))
        if unclaimed is not None:
            registry.discard(unclaimed.flow_id)
        owner = session.get("bridge_owner")
        if not isinstance(owner, str):
            owner = session["bridge_owner"] = secrets.token_urlsafe(24)
        flow = BridgeFlow(flow_id, owner, machine, identity, navigator)
        registry.add(flow)
        session["bridge_handoff"] = flow_id
        flow.start(launch)
        return redirect(url_for("index"), code=303)

    @app.get("/flow/state")
    def idle_state() -> Any:
        return jsonify(idle_payload())

    @app.get("/flow/<flow_id>/state")
    def flow_state(flow_id: str) -> Any:
        flow = owned_flow(flow_id)
        if flow is None:
            return jsonify(idle_payload())
        state = flow.machine.state
        payload = {
            "flow": flow.flow_id,
            "state": state.to_payload(config),
            "provider": flow.identity.page_config(),
            "navigate_to": flow.navigator.target,
        }
        if state.status in TERMINAL_STATUSES:
            # The page stops polling at a terminal state; the tokens go with this response.
            registry.discard(flow.flow_id)
        return jsonify(payload)

    @app.post("/flow/<flow_id>/interaction")
    def flow_interaction(flow_id: str) -> Any:
        flow = owned_flow(flow_id)
        if flow is None:
            abort(404)
        flow.machine.press_button()
        return "", 204

    @app.post("/credential/<flow_id>")
    def credential(flow_id: str) -> Any:
        if request.is_json:
            flow = owned_flow(flow_id)
            if flow is None:
                abort(404)
            payload = request.get_json(silent=True) or {}
            value = payload.get("credential") if isinstance(payload, dict) else None
            flow.identity.receive(value if isinstance(value, str) else "")
            return "", 202
        # Google's redirect mode posts a form cross-site, guarded by a double-submit cookie.
        flow = registry.get(flow_id)
        if flow is None:
            abort(404)
        csrf_form = request.form.get("g_csrf_token")
        if not csrf_form or csrf_form != request.cookies.get("g_csrf_token"):
            abort(400, description="Failed to verify double submit cookie.")
        flow.identity.receive(request.form.get("credential", ""))
        return redirect(url_for("index"), code=303)

    @app.post("/flow/<flow_id>/teardown")
    def flow_teardown(flow_id: str) -> Any:
        flow = owned_flow(flow_id)
        if flow is not None:
            registry.discard(flow.flow_id)
        return "", 204

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "flows": len(registry)})

    return app


def _determine_env_file(argv: list[str]) -> str:
    env_file = DEFAULT_ENV_FILE
    for idx, arg in enumerate(argv):
        if arg in ("--env-file", "-e"):
            if idx + 1 < len(argv):
                env_file = argv[idx + 1]
        elif arg.startswith("--env-file="):
            env_file = arg.split("=", 1)[1]
        elif arg.startswith("-e="):
            env_file = arg.split("=", 1)[1]
    return env_file


def _load_env_defaults(env_file: str) -> BridgeEnvDefaults:
    path = Path(env_file)
    if not path.exists():
        return BridgeEnvDefaults()
    values = dotenv_values(path)
    defaults = BridgeEnvDefaults(
        google_client_id=values.get("google_client_id"),
        func_key=values.get("func_key"),
        secret_key=values.get("secret_key"),
    )
    if values.get("backend_url"):
        defaults.backend_url = values["backend_url"]
    raw_delay = values.get("eject_delay")
    if raw_delay:
        try:
            defaults.eject_delay = float(raw_delay)
        except ValueError:
            raise SystemExit(
                f"eject_delay in {env_file} must be a number of seconds, got {raw_delay!r}."
            ) from None
    return defaults


def _config_from_args(args: argparse.Namespace) -> BridgeConfig:
    env_defaults: BridgeEnvDefaults = args.env_defaults
    return BridgeConfig(
        backend_url=args.backend_url or "",
        google_client_id=args.client_id or "",
        func_key=args.func_key or None,
        eject_delay=getattr(args, "eject_delay", env_defaults.eject_delay),
        timeout=args.timeout,
        secret_key=env_defaults.secret_key,
    )


def _open_in_browser(url: str, browser_choice: str) -> None:
    try:
        if browser_choice == "firefox":
            webbrowser.get("firefox").open(url)
        elif browser_choice == "chromium":
            try:
                from playwright.sync_api import sync_playwright  # type: ignore[import]
            except Exception as exc:  # pragma: no cover - environment specific
                print(
                    "Warning: failed to import Playwright for Chromium launch. "
                    "Install it in this environment and run "
                    "`python -m playwright install`.\n"
                    f"Details: {exc}",
                    file=sys.stderr,
                )
            else:
                def _open_with_playwright() -> None:
                    with sync_playwright() as p:
                        browser = p.chromium.launch(headless=False)
                        page = browser.new_page()
                        page.goto(url)
                        # Keep the window open for interactive use.
                        page.wait_for_timeout(24 * 60 * 60 * 1000)

                threading.Thread(target=_open_with_playwright, daemon=True).start()
        else:
            webbrowser.open(url)
    except webbrowser.Error as exc:  # pragma: no cover - best-effort helper
        print(f"Warning: failed to launch browser ({browser_choice}): {exc}", file=sys.stderr)


def handle_serve(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    app = create_app(config)
    bridge_url = f"http://{args.host}:{args.port}/"
    print(
        textwrap.dedent(
            f"""
            Enoki bridge running at {bridge_url}

            Backend: {config.backend_url}
            Function key: {'loaded' if config.func_key else 'not set'}

            The Obsidian plugin should open:
              {bridge_url}?source={LAUNCH_SOURCE}&nonce=<zkLogin nonce>
            """
        ).strip()
    )
    if getattr(args, "open_browser", False):
        _open_in_browser(bridge_url, getattr(args, "browser", "default"))
    try:
        app.run(host=args.host, port=args.port, use_reloader=False, threaded=True)
    finally:
        app.extensions["enoki_bridge"].discard_all()


def handle_launch_url(args: argparse.Namespace) -> None:
    params = {
        "source": LAUNCH_SOURCE,
        "nonce": args.nonce,
        "redirect": "true" if args.redirect else None,
        "prompt": args.prompt,
    }
    url = f"{args.bridge_url.rstrip('/')}/?{_encode_query(params)}"
    print(url)
    if args.open_browser:
        _open_in_browser(url, args.browser)


def handle_exchange(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    config.validate()
    session_token = SessionExchangeAdapter(config).exchange(args.id_token)
    derived = HydrationAdapter(config).hydrate(args.id_token, session_token)
    result = AuthenticationResult(
        identity_token=args.id_token,
        session_token=session_token,
        salt=derived.salt,
        address=derived.address,
    )
    summary = {
        "address": derived.address,
        "salt": derived.salt,
        "session_token_length": len(session_token),
    }
    json.dump(summary, sys.stdout, indent=2, sort_keys=True)
    print()
    print("\nDeeplink for Obsidian:")
    print(encode_deeplink(result, config.deeplink_protocol, config.deeplink_callback))


def handle_report(args: argparse.Namespace) -> None:
    entries: List[ReportEntry] = []
    context: Dict[str, Any] = {}
    config = _config_from_args(args)

    def run_step(name: str, func: Callable[[], str]) -> None:
        try:
            detail = func()
            entries.append(ReportEntry(name, "PASS", detail))
        except SkipStep as skip_exc:
            entries.append(ReportEntry(name, "SKIP", str(skip_exc)))
        except Exception as exc:  # noqa: BLE001
            entries.append(ReportEntry(name, "FAIL", str(exc)))

    def step_config() -> str:
        config.validate()
        lines = [
            f"Backend URL: {config.backend_url}",
            f"Google client ID: loaded ({len(config.google_client_id)} chars)",
            "Function key: "
            + ("loaded" if config.func_key else f"not set ({FUNCTION_KEY_HEADER} header omitted)"),
        ]
        return textwrap.indent("\n".join(lines), "  ")

    def step_script() -> str:
        ScriptLoader(config.provider_script_url, config.timeout).load()
        return textwrap.indent(f"Provider script reachable at {config.provider_script_url}", "  ")

    def step_exchange() -> str:
        if not args.id_token:
            raise SkipStep(
                "No ID token supplied. Provide `--id-token` with a Google ID token "
                "minted for this client ID to exercise the backend."
            )
        token = SessionExchangeAdapter(config).exchange(args.id_token)
        context["session_token"] = token
        return textwrap.indent(f"Received session token (length {len(token)} chars).", "  ")

    def step_hydrate() -> str:
        session_token = context.get("session_token")
        if not session_token:
            raise SkipStep("No session token captured; hydration skipped.")
        derived = HydrationAdapter(config).hydrate(args.id_token, session_token)
        context["derived"] = derived
        return textwrap.indent(
            f"Salt: loaded ({len(derived.salt)} chars)\nAddress: {derived.address}", "  "
        )

    def step_deeplink() -> str:
        derived = context.get("derived")
        if derived is None:
            raise SkipStep("Hydration did not complete; deeplink not built.")
        result = AuthenticationResult(
            identity_token=args.id_token,
            session_token=context["session_token"],
            salt=derived.salt,
            address=derived.address,
        )
        link = encode_deeplink(result, config.deeplink_protocol, config.deeplink_callback)
        target = link.split("?", 1)[0]
        return textwrap.indent(f"Built {target} deeplink ({len(link)} chars).", "  ")

    run_step(f"Load configuration from {args.env_file}", step_config)
    run_step("Load Google Identity Services script", step_script)
    run_step("Session exchange", step_exchange)
    run_step("Hydrate salt and address", step_hydrate)
    run_step("Build Obsidian deeplink", step_deeplink)

    print("\nEnoki bridge validation report\n==============================")
    for entry in entries:
        header = f"[{entry.status}] {entry.name}"
        print(header)
        print(textwrap.indent(entry.detail, "    "))
        print()
    failures = [e for e in entries if e.status == "FAIL"]
    if failures:
        if any(entry.detail.startswith("HTTP 401") for entry in failures):
            print(
                "Hint: App Service rejected the Google ID token. Check that the token was "
                "issued for the client ID configured on the Function App's Google provider."
            )
        raise SystemExit("One or more steps failed. See report above for details.")


def _add_backend_arguments(
    subparser: argparse.ArgumentParser, defaults: BridgeEnvDefaults
) -> None:
    subparser.add_argument(
        "--backend-url",
        default=defaults.backend_url,
        help="Azure Function App base URL (default: %(default)s).",
    )
    subparser.add_argument(
        "--client-id",
        default=defaults.google_client_id,
        help="Google OAuth client ID (default: read from the env file).",
    )
    subparser.add_argument(
        "--func-key",
        default=defaults.func_key,
        help="Function key sent as x-functions-key to the bridge Function (default: read from the env file).",
    )


def build_parser(defaults: BridgeEnvDefaults, env_file: str) -> argparse.ArgumentParser:
    description = textwrap.dedent(
        """
        Host the Enoki bridge that lets Obsidian sign in with Google.

        Typical flow:
          1. Run `serve` to host the bridge page.
          2. The Obsidian plugin opens the URL printed by `launch-url --nonce ...`.
          3. The bridge signs in with Google, exchanges and hydrates the token with
             the Function App and hands everything back via obsidian://enoki-auth.
        Use `report --id-token ...` to check the backend without a browser.
        """
    ).strip()
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.set_defaults(env_defaults=defaults)
    parser.add_argument(
        "--env-file",
        "-e",
        default=env_file,
        help="Path to the .env file containing bridge settings (default: %(default)s).",
    )
    parser.add_argument(
        "--timeout",
        default=30,
        type=int,
        help="HTTP timeout in seconds (default: %(default)s).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log debug output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the bridge web service.")
    _add_backend_arguments(serve, defaults)
    serve.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host/IP to bind the bridge to (default: %(default)s).",
    )
    serve.add_argument(
        "--port",
        type=int,
        default=5173,
        help="Port to bind the bridge to (default: %(default)s).",
    )
    serve.add_argument(
        "--eject-delay",
        type=float,
        default=defaults.eject_delay,
        help="Seconds to wait after opening Obsidian before showing the manual link (default: %(default)s).",
    )
    serve.add_argument(
        "--open-browser",
        action="store_true",
        help="Open the bridge URL in a browser after starting the server.",
    )
    serve.add_argument(
        "--browser",
        choices=("default", "firefox", "chromium"),
        default="default",
        help=(
            "When used with --open-browser, choose which browser to launch. "
            "Use 'chromium' to launch a Playwright-managed Chromium window."
        ),
    )
    serve.set_defaults(func=handle_serve)

    launch = subparsers.add_parser(
        "launch-url", help="Print the URL the Obsidian plugin opens for a given nonce."
    )
    launch.add_argument("--nonce", required=True, help="zkLogin nonce computed by the plugin.")
    launch.add_argument(
        "--bridge-url",
        default="http://127.0.0.1:5173",
        help="Where the bridge is served (default: %(default)s).",
    )
    launch.add_argument(
        "--redirect",
        action="store_true",
        help="Ask the bridge to use Google's full-page redirect sign-in instead of a popup.",
    )
    launch.add_argument("--prompt", help="Provider prompt hint passed through untouched.")
    launch.add_argument(
        "--open-browser",
        action="store_true",
        help="Open the launch URL in a browser.",
    )
    launch.add_argument(
        "--browser",
        choices=("default", "firefox", "chromium"),
        default="default",
        help="Browser to use with --open-browser (default: %(default)s).",
    )
    launch.set_defaults(func=handle_launch_url)

    exchange = subparsers.add_parser(
        "exchange",
        help="Exchange and hydrate a Google ID token, then print the Obsidian deeplink.",
    )
    _add_backend_arguments(exchange, defaults)
    exchange.add_argument("--id-token", required=True, help="Google ID token to exchange.")
    exchange.set_defaults(func=handle_exchange)

    report = subparsers.add_parser(
        "report",
        help="Check configuration, provider script and backend calls and emit a pass/fail report.",
    )
    _add_backend_arguments(report, defaults)
    report.add_argument(
        "--id-token",
        help="Google ID token to use for the session exchange and hydration steps.",
    )
    report.set_defaults(func=handle_report)

    return parser


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    env_file = _determine_env_file(argv)
    defaults = _load_env_defaults(env_file)
    parser = build_parser(defaults, env_file)
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except RuntimeError as exc:
        parser.exit(status=1, message=f"{exc}\n")


if __name__ == "__main__":
    main()
