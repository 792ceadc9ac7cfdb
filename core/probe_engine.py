"""
core/probe_engine.py
Async host-liveness probe engine with:
  • bounded worker pool over an asyncio.Queue (size = min(profile cap, targets))
  • system ping via asyncio subprocesses, no raw sockets in-process
  • TCP-connect fallback where a refused connection is proof of life
  • MAC (kernel ARP cache), reverse DNS and OUI vendor hints in full mode
  • per-target isolation: failures become reachable=False results
  • one ProbeTransportError after partial results when probing is impossible
  • No imports of database/services/dashboard (clean layering)
"""

from __future__ import annotations

import asyncio
import re
import socket
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional, Sequence, Union

from core.vendor import NullVendorLookup, VendorLookup
from utils.constants import (HOSTNAME_TIMEOUT_S, PROBE_PROFILES, TCP_ALIVE_PORTS,
                             TS_FORMAT, ProbeProfile, ScanType)
from utils.errors import ProbeTransportError
from utils.logger import get_logger
from utils.validators import normalize_mac, sanitize_name, validate_scan_type

log = get_logger("lanwatch.probe")

_CAP_HINT = ("Run as root or grant the ping binary raw-socket capability: "
             "sudo setcap cap_net_raw+ep $(which ping)")


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScanTarget:
    ip:        str
    known_mac: Optional[str] = None


@dataclass(frozen=True)
class ProbeResult:
    ip:         str
    reachable:  bool
    latency_ms: Optional[float]
    timestamp:  str
    mac:        Optional[str] = None
    hostname:   Optional[str] = None
    vendor:     Optional[str] = None
    error:      Optional[str] = None


# ─── Prober interface + system implementation ─────────────────────────────────

class Prober:
    """
    Low-level probe primitives. The engine only talks to this interface so
    tests can swap in a fake without touching the network.

    ``ping`` raises ProbeTransportError when probing is impossible for every
    target (binary missing, permission denied).
    """

    async def ping(self, ip: str, timeout_s: float) -> Optional[float]:
        raise NotImplementedError

    async def tcp_alive(self, ip: str, ports: Sequence[int],
                        timeout_s: float) -> Optional[float]:
        return None

    async def lookup_mac(self, ip: str) -> Optional[str]:
        return None

    async def resolve_hostname(self, ip: str, timeout_s: float) -> Optional[str]:
        return None


class SystemProber(Prober):
    """Prober backed by the platform ping binary and the kernel ARP cache."""

    _LATENCY_RE    = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)
    _PERMISSION_RE = re.compile(r"operation not permitted|permission denied", re.IGNORECASE)
    _LLADDR_RE     = re.compile(r"lladdr\s+([0-9a-f:]{17})", re.IGNORECASE)

    def __init__(self, ping_binary: str = "ping", arp_table: str = "/proc/net/arp"):
        self._ping = ping_binary
        self._arp_table = Path(arp_table)

    def _ping_cmd(self, ip: str, timeout_s: float) -> list:
        secs = str(max(1, int(round(timeout_s))))
        if sys.platform.startswith("win"):
            return [self._ping, "-n", "1", "-w", str(int(timeout_s * 1000)), ip]
        if sys.platform == "darwin":
            return [self._ping, "-c", "1", "-t", secs, ip]
        return [self._ping, "-c", "1", "-W", secs, ip]

    async def ping(self, ip: str, timeout_s: float) -> Optional[float]:
        cmd = self._ping_cmd(ip, timeout_s)
        t0 = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ProbeTransportError(
                f"'{self._ping}' command not found",
                hint="Install the ping utility (iputils-ping on Debian/Ubuntu)",
            ) from exc
        except PermissionError as exc:
            raise ProbeTransportError(f"Cannot execute '{self._ping}'",
                                      hint=_CAP_HINT) from exc

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s + 1.0)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None

        if proc.returncode != 0:
            if self._PERMISSION_RE.search(err.decode("utf-8", errors="replace")):
                raise ProbeTransportError("ping is not allowed to open raw sockets",
                                          hint=_CAP_HINT)
            return None

        m = self._LATENCY_RE.search(out.decode("utf-8", errors="replace"))
        if m:
            return float(m.group(1))
        return (time.monotonic() - t0) * 1000

    async def tcp_alive(self, ip: str, ports: Sequence[int],
                        timeout_s: float) -> Optional[float]:
        """
        Concurrent TCP connects to common ports. A completed handshake or a
        RST (ConnectionRefusedError) both prove the host is up; the first
        positive answer's round-trip time is returned.
        """
        async def _tcp_probe(port: int) -> Optional[float]:
            t0 = time.monotonic()
            try:
                _, w = await asyncio.wait_for(asyncio.open_connection(ip, port),
                                              timeout=timeout_s)
                w.close()
                try:
                    await w.wait_closed()
                except OSError:
                    pass
            except ConnectionRefusedError:
                pass             # RST received → host is UP, port closed
            except (asyncio.TimeoutError, OSError):
                return None      # no reply / unreachable
            return (time.monotonic() - t0) * 1000

        tasks = [asyncio.ensure_future(_tcp_probe(p)) for p in ports]
        try:
            for coro in asyncio.as_completed(tasks):
                rtt = await coro
                if rtt is not None:
                    return rtt
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return None

    async def lookup_mac(self, ip: str) -> Optional[str]:
        """ARP cache lookup: /proc/net/arp first, then `ip neigh show`."""
        try:
            for line in self._arp_table.read_text().splitlines()[1:]:
                parts = line.split()
                if len(parts) >= 4 and parts[0] == ip:
                    mac = normalize_mac(parts[3])
                    if mac:
                        return mac
        except OSError:
            pass

        try:
            proc = await asyncio.create_subprocess_exec(
                "ip", "neigh", "show", ip,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            log.debug(f"ip neigh unavailable for {ip}: {exc}")
            return None
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=2.0)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None
        m = self._LLADDR_RE.search(out.decode("utf-8", errors="replace"))
        return normalize_mac(m.group(1)) if m else None

    async def resolve_hostname(self, ip: str, timeout_s: float) -> Optional[str]:
        try:
            loop = asyncio.get_running_loop()
            hostname, _ = await asyncio.wait_for(
                loop.getnameinfo((ip, 0), socket.NI_NAMEREQD),
                timeout=timeout_s,
            )
        except (OSError, asyncio.TimeoutError):
            return None
        if not hostname or hostname == ip or hostname.endswith(".in-addr.arpa"):
            return None
        return sanitize_name(hostname)


# ─── Core Engine ─────────────────────────────────────────────────────────────

_WORKER_DONE = object()

TargetLike = Union[ScanTarget, str]


class ProbeEngine:
    """
    Bounded-concurrency liveness prober.

    Layering contract:
      Imports only: core/vendor.py, utils/
      Does NOT import: database, services, dashboard
    """

    def __init__(
        self,
        prober: Optional[Prober] = None,
        vendor_lookup: Optional[VendorLookup] = None,
        profiles: Optional[dict] = None,
    ):
        self._prober = prober or SystemProber()
        self._vendor = vendor_lookup or NullVendorLookup()
        self._profiles = profiles or PROBE_PROFILES

    def profile_for(self, scan_type) -> ProbeProfile:
        return self._profiles[validate_scan_type(scan_type)]

    # ── Public probe API ──────────────────────────────────────────────────────

    async def probe(
        self, targets: Iterable[TargetLike], scan_type=ScanType.QUICK
    ) -> AsyncIterator[ProbeResult]:
        """
        Probe every target and yield ProbeResults in completion order.

        Each call is one run. If the prober reports a transport failure,
        no further targets are started, results already in flight are
        still yielded, and the ProbeTransportError is raised once at the end.
        """
        profile = self.profile_for(scan_type)
        queue: asyncio.Queue = asyncio.Queue()
        for t in targets:
            queue.put_nowait(t if isinstance(t, ScanTarget) else ScanTarget(str(t)))
        if queue.empty():
            return

        results: asyncio.Queue = asyncio.Queue()
        stop = asyncio.Event()
        n_workers = min(profile.max_workers, queue.qsize())
        log.debug(f"Probing {queue.qsize()} targets ({profile.name}) with {n_workers} workers")

        async def worker() -> None:
            try:
                while not stop.is_set():
                    try:
                        target = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    result = await self._probe_isolated(target, profile)
                    if isinstance(result, ProbeTransportError):
                        stop.set()
                    results.put_nowait(result)
            finally:
                results.put_nowait(_WORKER_DONE)

        tasks = [asyncio.ensure_future(worker()) for _ in range(n_workers)]
        transport_error: Optional[ProbeTransportError] = None
        finished = 0
        try:
            while finished < n_workers:
                item = await results.get()
                if item is _WORKER_DONE:
                    finished += 1
                elif isinstance(item, ProbeTransportError):
                    if transport_error is None:
                        log.error(f"Probe transport failure: {item}")
                        transport_error = item
                        stop.set()
                else:
                    yield item
            # surfaces unexpected worker crashes
            await asyncio.gather(*tasks)
        finally:
            stop.set()
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if transport_error is not None:
            raise transport_error

    # ── Per-target probe ──────────────────────────────────────────────────────

    async def _probe_isolated(
        self, target: ScanTarget, profile: ProbeProfile
    ) -> Union[ProbeResult, ProbeTransportError]:
        try:
            return await self._probe_one(target, profile)
        except ProbeTransportError as exc:
            return exc
        except (asyncio.TimeoutError, OSError) as exc:
            log.debug(f"{target.ip} probe failed: {exc!r}")
            return ProbeResult(ip=target.ip, reachable=False, latency_ms=None,
                               timestamp=self._now(), mac=target.known_mac,
                               error=str(exc) or type(exc).__name__)

    async def _probe_one(self, target: ScanTarget, profile: ProbeProfile) -> ProbeResult:
        latency: Optional[float] = None
        for _ in range(1 + profile.retries):
            latency = await self._prober.ping(target.ip, profile.ping_timeout_s)
            if latency is not None:
                break

        if latency is None and profile.tcp_fallback:
            latency = await self._prober.tcp_alive(target.ip, TCP_ALIVE_PORTS,
                                                   profile.tcp_timeout_s)

        reachable = latency is not None
        mac = normalize_mac(target.known_mac)
        hostname = vendor = None
        if reachable and profile.collect_attributes:
            mac, hostname, vendor = await self._collect_hints(target.ip, mac)

        log.debug(f"{target.ip} {'up' if reachable else 'down'}"
                  + (f" {latency:.1f}ms" if reachable else ""))
        return ProbeResult(
            ip=target.ip,
            reachable=reachable,
            latency_ms=round(latency, 2) if reachable else None,
            timestamp=self._now(),
            mac=mac,
            hostname=hostname,
            vendor=vendor,
        )

    async def _collect_hints(self, ip: str, known_mac: Optional[str]):
        """MAC / hostname / vendor; each hint fails independently to None."""
        mac = hostname = vendor = None
        try:
            mac = await self._prober.lookup_mac(ip)
        except OSError as exc:
            log.debug(f"MAC lookup for {ip} failed: {exc}")
        mac = mac or known_mac
        try:
            hostname = await self._prober.resolve_hostname(ip, HOSTNAME_TIMEOUT_S)
        except OSError as exc:
            log.debug(f"Reverse DNS for {ip} failed: {exc}")
        if mac:
            try:
                vendor = await self._vendor.lookup(mac)
            except Exception as exc:  # third-party registry download / parse
                log.warning(f"Vendor lookup for {mac} failed: {exc}")
        return mac, hostname, vendor

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).strftime(TS_FORMAT)


__all__ = ["ScanTarget", "ProbeResult", "Prober", "SystemProber", "ProbeEngine"]
