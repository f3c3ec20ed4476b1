"""
MochiMap Query API

Read-only aiohttp application over the store, the peer scanner and the
event broadcaster.

Endpoints:
    GET /block/{bnum}             latest stored block at that height
    GET /blocks?<search>
    GET /transaction/{txid}       confirmed row preferred over unconfirmed
    GET /transactions?<search>
    GET /richlist?<search>
    GET /ledger/{tag|address}?<search>   balance deltas of one identity
    GET /balance/{address}        quorum balance lookup through the peers
    GET /network?<search>         cached peers (orderby=ip|best)
    GET /network/consensus        chain tip held by the most healthy peers
    GET /stream?block&transaction&network   Server-Sent Events
    GET /status                   service metrics

Errors are JSON bodies {"error": <reason>, "message": <detail>}.
"""

import asyncio
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from aiohttp import web

from ..config import ApiConfig
from ..network import PeerScanner
from ..storage import QueryError, QueryPlan, Store, StoreError, UNCONFIRMED, get_table, parse_search
from .stream import EventBroadcaster, heartbeat

SECURITY_HEADERS = {
    'X-Robots-Tag': 'none',
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'X-XSS-Protection': '1; mode=block',
    'Referrer-Policy': 'no-referrer',
    'Content-Security-Policy': (
        "base-uri 'self'; default-src 'none'; form-action 'self'; "
        "frame-ancestors 'none'; require-trusted-types-for 'script';"
    ),
    'Access-Control-Allow-Origin': '*',
}

STREAM_HEADERS = {
    'X-XSS-Protection': '1; mode=block',
    'X-Robots-Tag': 'none',
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'Referrer-Policy': 'no-referrer',
    'Content-Type': 'text/event-stream',
    'Content-Security-Policy': "default-src 'none'; frame-ancestors 'none'",
    'Connection': 'keep-alive',
    'Cache-Control': 'no-cache',
    'Access-Control-Allow-Origin': '*',
}

STATUS_MESSAGES = {
    400: 'Bad Request',
    404: 'Not Found',
    406: 'Not Acceptable',
    409: 'Conflict',
    422: 'Unprocessable Entity',
    500: 'Internal Server Error',
}

HEX64 = re.compile(r'^[0-9a-f]{64}$', re.IGNORECASE)
TAG = re.compile(r'^[0-9a-f]{24}$', re.IGNORECASE)

# Fields of a peer that /network accepts as exact-match filters
NETWORK_FILTERS = ('ip', 'status', 'chain_height', 'chain_hash', 'chain_weight')


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else str(value)
    if isinstance(value, datetime):
        return value.isoformat() + ('Z' if value.tzinfo is None else '')
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def dumps(content: Any) -> str:
    return json.dumps(content, default=_json_default, indent=2)


def respond(content: Any, status: int = 200) -> web.Response:
    """JSON response with the security headers; error bodies gain an `error` reason."""
    if status > 399 and isinstance(content, dict) and 'error' not in content:
        content = {'error': STATUS_MESSAGES.get(status, ''), **content}
    return web.Response(
        text=dumps(content),
        status=status,
        content_type='application/json',
        headers=SECURITY_HEADERS,
    )


def error(status: int, message: str, **extra) -> web.Response:
    return respond({'message': message, **extra}, status)


class QueryApi:
    """
    HTTP query API and SSE endpoint.

    Usage:
        api = QueryApi(store, broadcaster, scanner, ApiConfig(port=8080))
        await api.start()
        ...
        await api.stop()
    """

    def __init__(
        self,
        store: Store,
        broadcaster: Optional[EventBroadcaster] = None,
        scanner: Optional[PeerScanner] = None,
        config: Optional[ApiConfig] = None,
        status: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.config = config or ApiConfig()
        self._store = store
        self._broadcaster = broadcaster
        self._scanner = scanner
        self._status = status
        self._logger = logging.getLogger("QueryApi")
        self._runner: Optional[web.AppRunner] = None
        self._closing = asyncio.Event()

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._error_middleware])
        app.router.add_get('/block/{bnum}', self.block_handler)
        app.router.add_get('/blocks', self.blocks_handler)
        app.router.add_get('/transaction/{txid}', self.transaction_handler)
        app.router.add_get('/transactions', self.transactions_handler)
        app.router.add_get('/richlist', self.richlist_handler)
        app.router.add_get('/ledger/{identity}', self.ledger_handler)
        app.router.add_get('/balance/{address}', self.balance_handler)
        app.router.add_get('/network', self.network_handler)
        app.router.add_get('/network/consensus', self.consensus_handler)
        app.router.add_get('/stream', self.stream_handler)
        app.router.add_get('/status', self.status_handler)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def _on_shutdown(self, app: web.Application) -> None:
        # Ends open event streams before the runner waits on their handlers
        self._closing.set()

    async def start(self) -> None:
        self._closing.clear()
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=self.config.host, port=self.config.port)
        await site.start()
        self._logger.info(f"API listening on http://{self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        self._closing.set()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._logger.info("API stopped")

    # ==================== Plumbing ====================

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPNotFound:
            return error(400, 'The request was not understood', path=request.path)
        except web.HTTPMethodNotAllowed:
            return error(400, f'{request.method} is not supported', path=request.path)
        except QueryError as e:
            return error(400, f'Invalid search parameters: {e}', parameters=request.query_string)
        except StoreError as e:
            self._logger.error(f"Store failure serving {request.path_qs}: {e}")
            return error(500, 'Storage unavailable', timestamp=datetime.utcnow().isoformat() + 'Z')
        except asyncio.CancelledError:
            raise
        except web.HTTPException:
            raise
        except Exception as e:
            self._logger.exception(f"Unhandled error serving {request.path_qs}: {e}")
            return error(500, f'{e}', timestamp=datetime.utcnow().isoformat() + 'Z')

    def _search(self, request: web.Request, table: str) -> QueryPlan:
        return parse_search(
            '?' + request.query_string if request.query_string else '',
            get_table(table),
            default_limit=self.config.default_limit,
            max_limit=self.config.max_limit,
        )

    async def _list(self, request: web.Request, table: str,
                    criteria: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        plan = self._search(request, table)
        if criteria:
            plan = plan.and_where(criteria)
        return await self._store.query(table, plan)

    # ==================== Blocks ====================

    async def block_handler(self, request: web.Request) -> web.Response:
        raw = request.match_info['bnum']
        try:
            bnum = int(raw, 16) if raw.lower().startswith('0x') else int(raw)
        except ValueError:
            return error(400, f'Invalid block number: {raw}')

        row = await self._store.fetch_one(
            'block', QueryPlan.where({'bnum': bnum}, order_by=(('created', 'DESC'),))
        )
        if row is None:
            return error(404, f'Block {bnum} not found')
        return respond(row)

    async def blocks_handler(self, request: web.Request) -> web.Response:
        return respond(await self._list(request, 'block'))

    # ==================== Transactions ====================

    async def transaction_handler(self, request: web.Request) -> web.Response:
        txid = request.match_info['txid']
        if not HEX64.match(txid):
            return error(400, f'Invalid transaction id: {txid}')

        rows = await self._store.query(
            'transaction', QueryPlan.where({'txid': txid.lower()}, limit=None)
        )
        if not rows:
            return error(404, f'Transaction {txid} not found')
        confirmed = [row for row in rows if row.get('bhash') != UNCONFIRMED]
        return respond(confirmed[0] if confirmed else rows[0])

    async def transactions_handler(self, request: web.Request) -> web.Response:
        return respond(await self._list(request, 'transaction'))

    # ==================== Ledger ====================

    async def richlist_handler(self, request: web.Request) -> web.Response:
        return respond(await self._list(request, 'richlist'))

    async def ledger_handler(self, request: web.Request) -> web.Response:
        identity = request.match_info['identity'].lower()
        if TAG.match(identity):
            return respond(await self._list(request, 'balance', {'tag': identity}))
        if not HEX64.match(identity):
            return error(422, f'Expected a 24 hex digit tag or a 64 hex digit address: {identity}')

        rows = await self._list(request, 'balance', {'address_hash': identity})
        if not rows:
            rows = await self._list(request, 'balance', {'address': identity})
        return respond(rows)

    # ==================== Network ====================

    def _require_scanner(self) -> Optional[web.Response]:
        if self._scanner is None:
            return error(409, 'this request is unavailable...')
        return None

    async def balance_handler(self, request: web.Request) -> web.Response:
        unavailable = self._require_scanner()
        if unavailable:
            return unavailable
        address = request.match_info['address'].lower()
        if not (HEX64.match(address) or TAG.match(address)):
            return error(422, f'Expected a 24 hex digit tag or a 64 hex digit address: {address}')

        result = await self._scanner.query_balance(address)
        if not result.available:
            return error(404, f'No peer reported a balance for {address}')
        body = {'address': address, 'balance': result.value}
        body.update({k: v for k, v in result.to_dict().items() if k != 'value'})
        return respond(body)

    async def network_handler(self, request: web.Request) -> web.Response:
        unavailable = self._require_scanner()
        if unavailable:
            return unavailable

        query = request.query
        order_by = query.get('orderby', 'best')
        if order_by not in ('ip', 'best'):
            return error(400, f"orderby must be 'ip' or 'best', got {order_by!r}")
        match: Dict[str, Any] = {}
        for name in NETWORK_FILTERS:
            if name in query:
                match[name] = int(query[name]) if name == 'chain_height' and query[name].isdigit() else query[name]

        try:
            limit = int(query.get('limit', self.config.default_limit))
            offset = max(0, int(query.get('offset', 0)))
        except ValueError:
            return error(400, 'limit and offset must be integers')
        limit = max(0, min(limit, self.config.max_limit)) or self.config.default_limit

        peers = self._scanner.get_peers(match, order_by)
        return respond([node.to_dict() for node in peers[offset:offset + limit]])

    async def consensus_handler(self, request: web.Request) -> web.Response:
        unavailable = self._require_scanner()
        if unavailable:
            return unavailable
        tip = self._scanner.consensus()
        if tip is None:
            return error(404, 'No healthy peers available')
        return respond(tip.to_dict())

    # ==================== Stream ====================

    async def stream_handler(self, request: web.Request) -> web.StreamResponse:
        if self._broadcaster is None:
            return error(409, 'this request is unavailable...')

        accept = request.headers.get('Accept')
        if accept and 'text/event-stream' not in accept and '*/*' not in accept:
            return error(
                406,
                'Server was not able to match any MIME types specified in the Accept '
                'request HTTP header. To use this resource, please specify one of the '
                'following: text/event-stream',
            )

        try:
            subscription = self._broadcaster.subscribe(list(request.query.keys()))
        except ValueError as e:
            return error(400, str(e))

        response = web.StreamResponse(status=200, headers=STREAM_HEADERS)
        loop = asyncio.get_running_loop()
        try:
            await response.prepare(request)
            await response.write(b'\n\n')
            last_write = loop.time()
            while not self._closing.is_set():
                event = await subscription.get(timeout=1.0)
                if event is not None:
                    await response.write(event.encode())
                    last_write = loop.time()
                elif loop.time() - last_write >= self.config.heartbeat_interval:
                    await response.write(heartbeat())
                    last_write = loop.time()
        except ConnectionError:
            self._logger.debug("stream client disconnected")
        finally:
            self._broadcaster.unsubscribe(subscription)
        return response

    async def status_handler(self, request: web.Request) -> web.Response:
        return respond(self._status() if self._status else {'status': 'ok'})
