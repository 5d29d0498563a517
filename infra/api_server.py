"""JSON HTTP API for the dashboard: status, config, forced rebalancing, history."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from core.exceptions import ConfigInvalid, LoopStopped
from core.models import AttemptOutcome, RebalanceTier

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500


class VaultApi:
    """
    Route handlers, independent of the socket server.

    Every response body carries a `success` flag.
    """

    def __init__(
        self,
        scheduler,
        config_store,
        admission,
        ledger,
        health_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        force_timeout_seconds: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.scheduler = scheduler
        self.config_store = config_store
        self.admission = admission
        self.ledger = ledger
        self.health_provider = health_provider
        self.force_timeout_seconds = float(force_timeout_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def dispatch(self, method: str, raw_path: str, body: Optional[bytes] = None) -> Response:
        parsed = urlparse(raw_path)
        route = (method.upper(), parsed.path.rstrip("/") or "/")

        try:
            if route == ("GET", "/status"):
                return self.get_status()
            if route == ("GET", "/history"):
                return self.get_history(parse_qs(parsed.query))
            if route in (("GET", "/health"), ("GET", "/healthz"), ("GET", "/")):
                return self.get_health()

            if method.upper() == "POST":
                payload, error = _parse_json(body)
                if error:
                    return 400, {"success": False, "error": error}
                if route[1] == "/config":
                    return self.post_config(payload)
                if route[1] == "/force-rebalancing":
                    return self.post_force(payload)
                if route[1] == "/reset-daily-counter":
                    return self.post_reset()

            return 404, {"success": False, "error": f"No route for {method} {parsed.path}"}
        except Exception as exc:
            logger.error(f"Unhandled API error on {method} {parsed.path}: {exc}", exc_info=True)
            return 500, {"success": False, "error": "Internal server error"}

    def get_status(self) -> Response:
        return 200, {
            "success": True,
            "status": self.scheduler.status(),
            "config": self.config_store.get().to_api(),
        }

    def post_config(self, payload: Dict[str, Any]) -> Response:
        try:
            config = self.config_store.update(payload)
        except ConfigInvalid as exc:
            return 400, {"success": False, "error": "Invalid configuration", "errors": exc.errors}
        return 200, {
            "success": True,
            "config": config.to_api(),
            "message": "Configuration updated",
        }

    def post_force(self, payload: Dict[str, Any]) -> Response:
        raw_type = payload.get("rebalanceType", payload.get("rebalance_type"))
        try:
            if not isinstance(raw_type, str):
                raise ValueError("rebalanceType is required")
            tier = RebalanceTier.from_string(raw_type)
            if tier is RebalanceTier.NONE:
                raise ValueError("rebalanceType must be soft, medium or aggressive")
        except ValueError as exc:
            return 400, {"success": False, "error": str(exc)}

        if self.scheduler.stopping:
            return 503, {"success": False, "error": "Control loop is shutting down"}

        try:
            if self.scheduler.running:
                future = self.scheduler.submit_force(tier)
                attempt = future.result(timeout=self.force_timeout_seconds)
            else:
                attempt = self.scheduler.run_forced(tier)
        except LoopStopped as exc:
            return 503, {"success": False, "error": str(exc)}
        except FutureTimeout:
            return 202, {
                "success": True,
                "message": f"Forced {tier.value} rebalancing queued; still running",
                "status": self.scheduler.status(),
            }

        body = {
            "attempt": attempt.to_summary(),
            "status": self.scheduler.status(),
        }
        if attempt.outcome is AttemptOutcome.REJECTED:
            return 409, {
                "success": False,
                "message": f"Forced {tier.value} rebalancing rejected: {attempt.rejection_reason.value}",
                **body,
            }
        return 200, {
            "success": attempt.outcome is AttemptOutcome.SUCCESS,
            "message": f"Forced {tier.value} rebalancing finished: {attempt.outcome.value}",
            **body,
        }

    def post_reset(self) -> Response:
        self.admission.reset_daily_counter(self._clock())
        return 200, {
            "success": True,
            "message": "Daily rebalancing counter reset",
            "status": self.scheduler.status(),
        }

    def get_history(self, query: Dict[str, Any]) -> Response:
        try:
            limit = int(_first(query, "limit", DEFAULT_HISTORY_LIMIT))
            offset = int(_first(query, "offset", 0))
        except ValueError:
            return 400, {"success": False, "error": "limit and offset must be integers"}
        if limit < 0 or offset < 0:
            return 400, {"success": False, "error": "limit and offset must be >= 0"}
        limit = min(limit, MAX_HISTORY_LIMIT)

        now = self._clock()
        config = self.config_store.get()
        return 200, {
            "success": True,
            "history": [attempt.to_summary() for attempt in self.ledger.list(limit=limit, offset=offset)],
            "dailyCount": self.admission.status(now, config)["daily_rebalancings_count"],
            "ledgerDailyCount": self.ledger.daily_count(now=now),
        }

    def get_health(self) -> Response:
        payload = self.health_provider() if self.health_provider else {"ok": True}
        ok = bool(payload.get("ok", True))
        return (200 if ok else 503), {"success": ok, **payload}


def _first(query: Dict[str, Any], key: str, default: Any) -> Any:
    values = query.get(key)
    if not values:
        return default
    return values[0]


def _parse_json(body: Optional[bytes]) -> Tuple[Dict[str, Any], Optional[str]]:
    if not body:
        return {}, None
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {}, "Request body must be valid JSON"
    if not isinstance(payload, dict):
        return {}, "Request body must be a JSON object"
    return payload, None


class ApiServer:
    """Threaded JSON server hosting a VaultApi."""

    def __init__(self, port: int, api: VaultApi, host: str = "0.0.0.0"):
        self._host = host
        self._port = int(port)
        self._api = api
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._api)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="ApiServer", daemon=True)
        self._thread.start()
        logger.info("API server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:  # pragma: no cover - best-effort shutdown
            logger.warning("Failed shutting down API server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(api: VaultApi):

        class ApiHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                self._respond(*api.dispatch("GET", self.path))

            def do_POST(self):  # type: ignore[override]
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length > 0 else b""
                self._respond(*api.dispatch("POST", self.path, body))

            def do_OPTIONS(self):  # type: ignore[override]
                self.send_response(204)
                self._cors_headers()
                self.end_headers()

            def _cors_headers(self) -> None:
                self.send_header("Access-Control-Allow-Origin", "*")
                self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
                self.send_header("Access-Control-Allow-Headers", "Content-Type")

            def _respond(self, status: int, payload: Dict[str, Any]) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(status)
                self._cors_headers()
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                logger.debug("API %s - %s", self.address_string(), format % args)

        return ApiHandler


__all__ = ["ApiServer", "VaultApi"]
