"""
Peer Network Scanner

Discovers the Mochimo peer graph from a single bootstrap IP and keeps a
bounded, age-limited cache of peer states.

Two cooperating loops:
- run (every second): rescan reachable nodes and their advertised peers;
  after ~30s with no reachable node, re-seed from the bootstrap IP and cache
- scan(ip): bounded-concurrency fire-and-forget scan; over the cap the scan
  is deferred by one second instead of blocking

Query side:
- get_peers(match, order_by): filtered cache listing ordered by ip or by
  chain weight (numeric) with continuous uptime as tiebreak
- consensus(): chain tip held by the most healthy peers
- query_balance(address): quorum balance lookup across the best peers
"""

import asyncio
import ipaddress
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from ..config import ScannerConfig
from ..metrics import ScannerMetrics
from ..types import PeerNode, PeerStatus, diff_dict
from .cache import PeerCache
from .consensus import ChainTip, ConsensusResult, chain_tip, query_consensus
from .geo import GeoLocator
from .protocol import PeerProtocol, PeerProtocolError

EmitFn = Callable[[Dict[str, Any], str], None]

# Non-routable IPv4 ranges never added to the cache
PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(net) for net in (
        '0.0.0.0/8',
        '10.0.0.0/8',
        '127.0.0.0/8',
        '169.254.0.0/16',
        '172.16.0.0/12',
        '192.168.0.0/16',
    )
)


def is_private_ipv4(ip: str) -> bool:
    """True for private, loopback, link-local and unparseable addresses."""
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return True
    return any(addr in net for net in PRIVATE_NETWORKS)


class PeerScanner:
    """
    Continuous peer scanner.

    Usage:
        scanner = PeerScanner(protocol, ScannerConfig(node_ip="1.2.3.4"), emit=broadcaster.emit)
        await scanner.start()
        best = scanner.get_peers({'status': 'ok'}, 'best')
        await scanner.stop()
    """

    def __init__(
        self,
        protocol: PeerProtocol,
        config: Optional[ScannerConfig] = None,
        emit: Optional[EmitFn] = None,
        geo: Optional[GeoLocator] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[ScannerMetrics] = None,
    ):
        self.config = config or ScannerConfig()
        self.metrics = metrics or ScannerMetrics()
        self.cache = PeerCache(self.config.max_ip_num, self.config.max_node_age, clock)
        self._protocol = protocol
        self._emit = emit
        self._geo = geo
        self._clock = clock
        self._logger = logging.getLogger("PeerScanner")

        # State
        self._scanning: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._deferred: Dict[str, asyncio.TimerHandle] = {}
        self._run_task: Optional[asyncio.Task] = None
        self._running = False
        self._idle_since = 0.0

    @property
    def in_flight(self) -> int:
        return len(self._scanning)

    @property
    def idle_since(self) -> float:
        return self._idle_since

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._geo:
            await self._geo.start()
        self.init()
        self._run_task = asyncio.create_task(self._run_loop())
        self._logger.info(f"Peer scanner started (bootstrap {self.config.node_ip})")

    async def stop(self) -> None:
        """Stop the run loop, clear deferred scans and cancel in-flight scans."""
        self._running = False
        if self._run_task:
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
            self._run_task = None

        if self._deferred:
            self._logger.info("clearing deferred scans...")
        for handle in self._deferred.values():
            handle.cancel()
        self._deferred.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scanning.clear()

        if self._geo:
            await self._geo.stop()
        self._logger.info("Peer scanner stopped")

    async def drain(self) -> None:
        """Wait for in-flight and deferred scans to finish."""
        while self._tasks or self._deferred:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.config.defer_delay / 2)

    def init(self) -> None:
        """Seed scans from the bootstrap IP and every cached node."""
        if len(self.cache):
            self._logger.info("(re)scan network cache...")
        else:
            self._logger.info("begin network scan...")
        self.scan(self.config.node_ip)
        for ip in self.cache.keys():
            self.scan(ip)

    # ==================== Run Loop ====================

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self.run_once()
            except Exception as e:
                self._logger.exception(f"Run cycle failed: {e}")
            await asyncio.sleep(self.config.run_interval)

    def run_once(self) -> int:
        """One run cycle. Returns the number of reachable cached nodes."""
        now = self._clock()
        reachable = 0

        for node in self.cache.values():
            if not node.healthy:
                continue
            reachable += 1
            if self._idle_since:
                self._logger.warning("communication restored!")
                self._idle_since = 0.0
            self.scan(node.ip)
            for peer in node.peers:
                self.scan(peer)

        if not reachable:
            if not self._idle_since:
                self._logger.warning("communication loss detected!")
                self._idle_since = now
            elif now - self._idle_since > self.config.idle_threshold:
                self._logger.error("extended communication loss! perform re-initialization...")
                self._idle_since = now
                self.metrics.reinits += 1
                self.init()

        self.metrics.reachable = reachable
        self.metrics.cached = len(self.cache)
        self.metrics.idle_since = self._idle_since
        return reachable

    # ==================== Scanning ====================

    def scan(self, ip: str) -> bool:
        """
        Schedule a scan of `ip`.

        Returns True if a scan task was started. Private addresses (other than
        the bootstrap IP) and IPs already in flight are ignored; over the
        concurrency cap the scan is retried after `defer_delay`.
        """
        if ip in self._scanning:
            return False
        if ip != self.config.node_ip and is_private_ipv4(ip):
            return False

        if len(self._scanning) >= self.config.max_scan:
            self.metrics.deferred += 1
            if ip not in self._deferred:
                loop = asyncio.get_running_loop()
                self._deferred[ip] = loop.call_later(self.config.defer_delay, self._run_deferred, ip)
            return False

        self._scanning.add(ip)
        task = asyncio.create_task(self._scan_task(ip))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def _run_deferred(self, ip: str) -> None:
        self._deferred.pop(ip, None)
        if self._running:
            self.scan(ip)

    async def _scan_task(self, ip: str) -> None:
        try:
            await self.scan_node(ip)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.failures += 1
            self._logger.exception(f"SCAN {ip} failed: {e}")
        finally:
            self._scanning.discard(ip)

    async def scan_node(self, ip: str) -> Optional[PeerNode]:
        """
        Contact one node and merge its report into the cache.

        Returns the node state, or None when the cached state is recent
        enough that no contact was made.
        """
        now = self._clock()
        cached = self.cache.get(ip)
        if cached and cached.timestamp and now - cached.timestamp < self.config.rescan_age:
            self.metrics.skipped_recent += 1
            return None

        node = cached or PeerNode(ip=ip)
        previous = node.to_dict() if cached else {}
        self.metrics.scans += 1

        report = await self._request(ip)
        node.merge(report)
        # Last contact attempt; paces rescans. Cache age only restarts on healthy replies.
        node.timestamp = self._clock()

        if node.healthy:
            if not node.uptimestamp:
                node.uptimestamp = node.timestamp
            if self._geo and node.geo is None:
                node.geo = await self._geo.lookup(ip)
            if cached:
                self.cache.touch(ip)
        else:
            self.metrics.failures += 1
            node.uptimestamp = 0.0

        if node.healthy and ip not in self.cache:
            if not is_private_ipv4(ip):
                self.cache.set(ip, node)
            for peer in node.peers:
                self.scan(peer)

        self._publish(node, previous)
        return node

    async def _request(self, ip: str) -> Mapping[str, Any]:
        try:
            report = await self._protocol.request_peer_list(ip)
        except (PeerProtocolError, OSError, asyncio.TimeoutError) as e:
            self._logger.debug(f"peer list request to {ip} failed: {e}")
            return {'status': PeerStatus.UNREACHABLE}
        if not isinstance(report, Mapping):
            self._logger.debug(f"peer list from {ip} is not a mapping: {type(report).__name__}")
            return {'status': PeerStatus.BAD}
        return report

    def _publish(self, node: PeerNode, previous: Dict[str, Any]) -> None:
        if not self._emit:
            return
        current = node.to_dict()
        payload = diff_dict(previous, current) if previous else current
        payload['ip'] = node.ip
        try:
            self._emit(payload, 'network')
        except Exception as e:
            self._logger.error(f"emit failed for network update {node.ip}: {e}")

    # ==================== Queries ====================

    def get_peers(self, match: Optional[Mapping[str, Any]] = None, order_by: str = 'best') -> List[PeerNode]:
        """
        Cached nodes matching every field in `match`, ordered by `order_by`.

        Fields a node does not have are ignored. `order_by` is 'ip' or 'best'
        (descending chain weight, then longest uptime).
        """
        match = match or {}
        peers = []
        for node in self.cache.values():
            data = node.to_dict()
            if any(key in data and data[key] != value for key, value in match.items()):
                continue
            peers.append(node)

        if order_by == 'ip':
            peers.sort(key=lambda n: n.ip)
        else:
            peers.sort(key=lambda n: (-n.weight_value, -n.uptime))
        return peers

    def best_peers(self, limit: Optional[int] = None) -> List[PeerNode]:
        peers = self.get_peers({'status': PeerStatus.OK.value}, 'best')
        return peers[:limit or self.config.consensus_sample]

    def consensus(self) -> Optional[ChainTip]:
        return chain_tip(self.cache.values())

    async def query_balance(self, address: str) -> ConsensusResult:
        """Balance of `address` agreed by `quorum` of the best peers."""
        async def request(ip: str) -> Optional[int]:
            return await self._protocol.request_balance(ip, address)

        return await query_consensus(self.best_peers(), request, self.config.quorum)
