"""
REST / HTTP adapter for the MOOSH wallet core.

Built on ``aiohttp``; a thin translation layer over ``WalletService``.

Endpoints
---------
GET  /health                    Liveness check
POST /api/wallet/generate       New wallet       {wordCount, network}
POST /api/wallet/import         From mnemonic    {mnemonic, network}
POST /api/wallet/validate       Address check    {address, type}
POST /api/wallet/export         Encrypted backup {wallet, password, format}
POST /api/wallet/import-backup  Restore backup   {content, password}
POST /api/wallet/export-batch   Batch backup     {walletIds, wallets, password}
POST /api/wallet/import-batch   Batch restore    {bundle, password}
GET  /api/balance/{address}     Balance via provider chain

Every response is ``{"success": true, "data": ...}`` or
``{"success": false, "error": ..., "kind": ...}``.

Security
--------
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(service, balance, host="127.0.0.1", port=3001)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Optional

from aiohttp import web

from moosh_core import __version__
from moosh_core.errors import InvalidParameter, WalletCoreError
from moosh_core.mnemonic import word_count_to_strength

if TYPE_CHECKING:
    from moosh_core.balance import ProviderChain
    from moosh_core.config import ServerConfig
    from moosh_core.service import WalletService

logger = logging.getLogger("moosh_api")

_STATUS_BY_KIND = {
    "DecryptionFailed": 401,
    "ProviderUnavailable": 503,
}


# ═══════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════

def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str, ensure_ascii=False)


def _ok(data: Any) -> web.Response:
    return web.json_response({"success": True, "data": data}, dumps=_json_dumps)


def _fail(error: str, kind: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": error, "kind": kind}, status=status)


async def _read_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise InvalidParameter("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise InvalidParameter("Request body must be a JSON object")
    return body


def _require(body: dict, name: str) -> Any:
    value = body.get(name)
    if value is None or value == "":
        raise InvalidParameter(f"{name} is required")
    return value


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket; ``rpm <= 0`` disables limiting."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm
        # ip -> [tokens, last_refill]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * self._rpm / 60.0)
        bucket[1] = now
        if bucket[0] < 1.0:
            return False
        bucket[0] -= 1.0
        return True


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_error_middleware():
    """Translate core errors into the JSON error envelope."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except WalletCoreError as exc:
            status = _STATUS_BY_KIND.get(exc.kind, 400)
            logger.info("%s %s -> %d %s", request.method, request.path, status, exc.kind)
            return _fail(str(exc), exc.kind, status)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return _fail("Internal server error", "InternalError", 500)

    return error_middleware


def _make_rate_limit_middleware(bucket: _TokenBucket):
    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            return web.json_response(
                {"success": False, "error": "Rate limit exceeded. Try again later.",
                 "kind": "RateLimited"},
                status=429,
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_cors_middleware(origins: list[str]):
    """CORS headers for explicitly listed origins; ``*`` is ignored."""

    allowed = set(origins)
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around a ``WalletService``."""

    def __init__(
        self,
        service: WalletService,
        balance: Optional[ProviderChain] = None,
        host: str = "127.0.0.1",
        port: int = 3001,
        *,
        server_config: ServerConfig | None = None,
    ):
        self.service = service
        self.balance = balance
        self.host = host
        self.port = port
        self._server_config = server_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 4_194_304

        cfg = self._server_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        middlewares.append(_make_error_middleware())

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_post("/api/wallet/generate", self._generate)
        app.router.add_post("/api/wallet/import", self._import_mnemonic)
        app.router.add_post("/api/wallet/validate", self._validate)
        app.router.add_post("/api/wallet/export", self._export)
        app.router.add_post("/api/wallet/import-backup", self._import_backup)
        app.router.add_post("/api/wallet/export-batch", self._export_batch)
        app.router.add_post("/api/wallet/import-batch", self._import_batch)
        app.router.add_get("/api/balance/{address}", self._balance)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return _ok({
            "status": "ok",
            "service": "moosh-wallet-core",
            "version": __version__,
            "balance": self.balance is not None,
        })

    async def _generate(self, request: web.Request) -> web.Response:
        """
        POST /api/wallet/generate
        Body: {"wordCount": 12, "network": "MAINNET"}
        """
        body = await _read_body(request)
        word_count = body.get("wordCount", 12)
        if isinstance(word_count, bool) or not isinstance(word_count, int):
            raise InvalidParameter("wordCount must be 12 or 24")
        strength = word_count_to_strength(word_count)
        network = body.get("network") or "MAINNET"
        return _ok(self.service.generate(strength, network))

    async def _import_mnemonic(self, request: web.Request) -> web.Response:
        """
        POST /api/wallet/import
        Body: {"mnemonic": "word word ..." | ["word", ...], "network": "MAINNET"}
        """
        body = await _read_body(request)
        mnemonic = _require(body, "mnemonic")
        if not isinstance(mnemonic, (str, list)):
            raise InvalidParameter("mnemonic must be a string or a list of words")
        network = body.get("network") or "MAINNET"
        return _ok(self.service.import_from_mnemonic(mnemonic, network))

    async def _validate(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        address = _require(body, "address")
        kind = body.get("type") or "bitcoin"
        return _ok({
            "address": address,
            "type": kind,
            "valid": self.service.validate_address(address, kind),
        })

    async def _export(self, request: web.Request) -> web.Response:
        """
        POST /api/wallet/export
        Body: {"wallet": {...}, "password": "...", "format": "json"|"qr"|"paper"}
        """
        body = await _read_body(request)
        wallet = _require(body, "wallet")
        password = body.get("password")
        fmt = body.get("format") or "json"
        return _ok(await self.service.export_wallet(wallet, password, fmt))

    async def _import_backup(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        content = _require(body, "content")
        password = body.get("password")
        return _ok(await self.service.import_wallet(content, password))

    async def _export_batch(self, request: web.Request) -> web.Response:
        """
        POST /api/wallet/export-batch
        Body: {"walletIds": [...], "wallets": {id: {...}}, "password": "..."}
        """
        body = await _read_body(request)
        wallet_ids = body.get("walletIds") or []
        wallets = body.get("wallets") or {}
        if not isinstance(wallet_ids, list) or not isinstance(wallets, dict):
            raise InvalidParameter("walletIds must be a list and wallets an object")
        password = body.get("password")
        return _ok(await self.service.export_multiple(wallet_ids, wallets, password))

    async def _import_batch(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        bundle = _require(body, "bundle")
        password = body.get("password")
        return _ok(await self.service.import_batch(bundle, password))

    async def _balance(self, request: web.Request) -> web.Response:
        if self.balance is None:
            return _fail("Balance lookup is not configured", "ProviderUnavailable", 503)
        address = request.match_info["address"]
        return _ok(await self.balance.get_balance(address))
