#!/usr/bin/env python3
"""
lanwatch — LAN host discovery & monitoring
main.py — CLI entry point

Usage:
  python3 main.py --scan 192.168.1.0/24
  python3 main.py --auto-detect --scan-type quick
  python3 main.py --refresh
  python3 main.py --entries 50 --status online --sort last_seen --order desc
  python3 main.py --stats --hours 24
  python3 main.py --purge history
  python3 main.py --daemon
  python3 main.py --dashboard --host 127.0.0.1 --dash-port 5000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

# Try uvloop for a faster event loop on Linux/macOS
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

from database.repository import SORT_KEYS
from services.container import Services, build_services
from services.orchestrator import ScanProgress, ScanSummary
from services.retention import PurgeCategory
from utils.config import Settings, load_settings
from utils.constants import (STATS_DEFAULT_HOURS, VERSION, HostStatus,
                             ScanType)
from utils.errors import LanwatchError, ScanAlreadyRunningError
from utils.logger import get_logger, set_level

log = get_logger("lanwatch")

BANNER = r"""
  ╔═══════════════════════════════════════════════════╗
  ║  ██╗      █████╗ ███╗   ██╗                        ║
  ║  ██║     ██╔══██╗████╗  ██║   w a t c h            ║
  ║  ██║     ███████║██╔██╗ ██║                        ║
  ║  ██║     ██╔══██║██║╚██╗██║                        ║
  ║  ███████╗██║  ██║██║ ╚████║                        ║
  ║  ╚══════╝╚═╝  ╚═╝╚═╝  ╚═══╝                        ║
  ║  Discovery v1.0  ·  Async Probes  ·  Scheduler     ║
  ╚═══════════════════════════════════════════════════╝"""

# exit codes
EXIT_OK      = 0
EXIT_FAILED  = 1
EXIT_INVALID = 2
EXIT_BUSY    = 3


def _print_error(exc: Exception) -> None:
    print(f"\n  ✗ {exc}")
    hint = getattr(exc, "hint", None)
    if hint:
        print(f"    hint: {hint}")


def _progress_printer(quiet: bool):
    def cb(p: ScanProgress) -> None:
        if quiet:
            return
        sys.stdout.write(
            f"\r  [{p.percentage:3d}%] {p.current_phase:<10} "
            f"{p.scanned}/{p.total}  found {p.found}   "
        )
        sys.stdout.flush()
    return cb


def _print_summary(summary: ScanSummary) -> None:
    title = "SCAN" if summary.kind == "scan" else "REFRESH"
    mark = "COMPLETE" if summary.ok else "FAILED"
    print(f"\n\n{'═'*60}")
    print(f"  {title} #{summary.run_id} {mark}")
    print(f"{'─'*60}")
    if summary.target_range:
        print(f"  Range        : {summary.target_range}")
    print(f"  Scan type    : {summary.scan_type}")
    print(f"  Probed       : {summary.scanned}")
    print(f"  Online       : {summary.found}")
    print(f"  New hosts    : {summary.new}")
    print(f"  Went offline : {summary.offline}")
    print(f"  Duration     : {summary.duration_s:.2f}s")
    if summary.error:
        print(f"  Error        : {summary.error}")
    if summary.hint:
        print(f"  Hint         : {summary.hint}")
    print(f"{'═'*60}\n")


# ─── Scan / refresh runners ───────────────────────────────────────────────────

async def _run_scan(services: Services, args) -> int:
    services.recover_stale_runs()
    services.orchestrator.set_progress_callback(_progress_printer(args.quiet))
    summary = await services.scheduler.run_manual_scan(
        args.scan, auto_detect=args.auto_detect, scan_type=args.scan_type,
    )
    _print_summary(summary)
    if summary.ok:
        print("  Tip: python3 main.py --entries 50 --status online")
    return EXIT_OK if summary.ok else EXIT_FAILED


async def _run_refresh(services: Services, args) -> int:
    services.recover_stale_runs()
    if not services.repo.known_targets():
        print("  No known hosts yet. Run: python3 main.py --scan <range>")
        return EXIT_OK
    services.orchestrator.set_progress_callback(_progress_printer(args.quiet))
    summary = await services.scheduler.run_manual_refresh(scan_type=args.scan_type)
    _print_summary(summary)
    return EXIT_OK if summary.ok else EXIT_FAILED


# ─── Daemon ───────────────────────────────────────────────────────────────────

async def _run_daemon(services: Services) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:   # Windows
            pass

    await services.start(startup_refresh=True)
    status = services.scheduler.get_status()
    log.info(f"Daemon running (scheduler {'on' if status['enabled'] else 'off'}); "
             f"Ctrl+C to stop")
    try:
        await stop.wait()
    finally:
        services.shutdown()
        log.info("Daemon stopped")
    return EXIT_OK


# ─── Views ────────────────────────────────────────────────────────────────────

def show_entries(services: Services, args) -> None:
    items, total = services.repo.query_entries(
        status=args.status, search=args.search,
        sort_by=args.sort, sort_order=args.order,
        limit=args.entries, offset=args.offset,
    )
    if not items:
        print("  No hosts recorded. Run: python3 main.py --scan <range>")
        return
    w = {"ip": 16, "status": 8, "host": 28, "mac": 18, "vendor": 22, "lat": 8}
    print(f"\n  {'IP':<{w['ip']}} {'STATUS':<{w['status']}} {'HOSTNAME':<{w['host']}} "
          f"{'MAC':<{w['mac']}} {'VENDOR':<{w['vendor']}} {'LAT':>{w['lat']}}  LAST SEEN")
    print("  " + "─" * (sum(w.values()) + 26))
    for e in items:
        lat = f"{e.ping_latency:.1f}ms" if e.ping_latency is not None else "—"
        host = (e.hostname or "")[:w["host"]]
        vendor = (e.vendor or "")[:w["vendor"]]
        print(f"  {e.ip:<{w['ip']}} {e.status:<{w['status']}} {host:<{w['host']}} "
              f"{e.mac or '':<{w['mac']}} {vendor:<{w['vendor']}} {lat:>{w['lat']}}  "
              f"{e.last_seen[:19]}")
    shown_to = args.offset + len(items)
    print(f"\n  {args.offset + 1}-{shown_to} of {total}")


def show_runs(services: Services, limit: int) -> None:
    runs = services.repo.list_runs(limit)
    if not runs:
        print("  No runs yet. Run: python3 main.py --scan <range>")
        return
    w = {"id": 5, "kind": 8, "type": 6, "range": 20, "status": 10, "n": 8, "dur": 9}
    print(f"\n  {'ID':<{w['id']}} {'KIND':<{w['kind']}} {'TYPE':<{w['type']}} "
          f"{'RANGE':<{w['range']}} {'STATUS':<{w['status']}} {'PROBED':<{w['n']}} "
          f"{'FOUND':<{w['n']}} {'DUR':<{w['dur']}} STARTED")
    print("  " + "─" * (sum(w.values()) + w["n"] + 28))
    for r in runs:
        dur = f"{r.duration_s:.1f}s" if r.duration_s is not None else "—"
        print(f"  {r.id:<{w['id']}} {r.kind:<{w['kind']}} {r.scan_type:<{w['type']}} "
              f"{r.target_range or '—':<{w['range']}} {r.status:<{w['status']}} "
              f"{r.scanned:<{w['n']}} {r.found:<{w['n']}} {dur:<{w['dur']}} "
              f"{(r.started_at or '')[:19]}")


def show_stats(services: Services, hours: int) -> None:
    s = services.repo.stats()
    print(f"\n  Hosts   : {s['total']}  (online {s['online']}, offline {s['offline']}, "
          f"unknown {s['unknown']})")
    print(f"  Last run: {s['last_scan'] or '—'}")
    series = services.repo.historical_series(hours)
    if not series:
        return
    print(f"\n  {'BUCKET':<20} {'ONLINE':>7} {'OFFLINE':>8} {'TOTAL':>6} {'AVG LAT':>9}")
    for p in series:
        lat = f"{p['avg_latency']:.1f}ms" if p["avg_latency"] is not None else "—"
        print(f"  {p['time'][:16]:<20} {p['online']:>7} {p['offline']:>8} "
              f"{p['total']:>6} {lat:>9}")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


# ─── CLI ─────────────────────────────────────────────────────────────────────

def build_cli() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="lanwatch",
        description=f"lanwatch {VERSION} — LAN host discovery & monitoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Ranges:       192.168.1.0/24  |  192.168.1.10-50  |  10.0.0.1-10.0.0.20  |  10.0.0.7
Scan types:   quick (single ping)   full (retry, TCP fallback, MAC/hostname/vendor)

Examples:
  %(prog)s --scan 192.168.1.0/24
  %(prog)s --auto-detect --scan-type quick
  %(prog)s --refresh
  %(prog)s --entries 20 --status offline --sort last_seen --order desc
  %(prog)s --purge offline
  %(prog)s --daemon --config config.yaml
""",
    )
    g = ap.add_argument_group
    s = g("Scan")
    s.add_argument("--scan",        metavar="RANGE", help="CIDR, dash range or single IPv4")
    s.add_argument("--auto-detect", action="store_true",
                   help="Scan the /24 of the primary interface")
    s.add_argument("--scan-type",   choices=[t.value for t in ScanType], default=None,
                   help="quick or full (default: full for scans, quick for refresh)")
    s.add_argument("--refresh",     action="store_true", help="Re-probe known hosts")

    q = g("Results")
    q.add_argument("--entries",     metavar="N", nargs="?", const=50, type=int,
                   help="List hosts (default: 50)")
    q.add_argument("--status",      choices=[h.value for h in HostStatus])
    q.add_argument("--search",      metavar="TEXT", help="Match IP, hostname, MAC or vendor")
    q.add_argument("--sort",        choices=list(SORT_KEYS), default="ip")
    q.add_argument("--order",       choices=["asc", "desc"], default="asc")
    q.add_argument("--offset",      type=int, default=0)
    q.add_argument("--runs",        metavar="N", nargs="?", const=20, type=int,
                   help="Show scan/refresh runs (default: 20)")
    q.add_argument("--stats",       action="store_true", help="Totals and status timeline")
    q.add_argument("--hours",       type=int, default=STATS_DEFAULT_HOURS,
                   help=f"Timeline lookback (default: {STATS_DEFAULT_HOURS})")

    e = g("Edit")
    e.add_argument("--set-hostname", nargs=2, metavar=("IP", "NAME"),
                   help="Pin a hostname (empty string clears it)")
    e.add_argument("--set-vendor",   nargs=2, metavar=("IP", "VENDOR"),
                   help="Pin a vendor (empty string clears it)")
    e.add_argument("--delete",       metavar="IP", help="Forget one host")
    e.add_argument("--priority",     action="store_true",
                   help="Show attribute source priority")
    e.add_argument("--set-priority", metavar="JSON",
                   help='e.g. \'{"priority": ["unifi", "freebox", "scanner"]}\'')

    db = g("Database")
    db.add_argument("--purge",      choices=["all"] + [c.value for c in PurgeCategory],
                    help="Apply retention windows now")
    db.add_argument("--clear-db",   action="store_true", help="Delete all scan data")
    db.add_argument("--db-stats",   action="store_true", help="Row counts, size, oldest rows")
    db.add_argument("--compact",    action="store_true", help="VACUUM the database")
    db.add_argument("--db-path",    default=None, metavar="FILE")

    sc = g("Scheduler")
    sc.add_argument("--scheduler-status", action="store_true",
                    help="Scheduler and auto-purge configuration")
    sc.add_argument("--daemon",     action="store_true",
                    help="Run scheduled scans and auto-purge until interrupted")

    d = g("Dashboard")
    d.add_argument("--dashboard",   action="store_true", help="Start the JSON dashboard")
    d.add_argument("--host",        default=None)
    d.add_argument("--dash-port",   type=int, default=None, metavar="PORT")

    ap.add_argument("--config",     default="config.yaml", metavar="FILE")
    ap.add_argument("--debug",      action="store_true", help="Verbose logging")
    ap.add_argument("--quiet",      action="store_true", help="Suppress progress output")
    ap.add_argument("--no-logo",    action="store_true", help="Hide ASCII banner")
    ap.add_argument("--version",    action="version",   version=f"lanwatch {VERSION}")
    return ap


def _dispatch(args, settings: Settings) -> int:
    services = build_services(settings)
    orch = services.orchestrator

    if args.scan or args.auto_detect:
        args.scan_type = args.scan_type or ScanType.FULL.value
        return asyncio.run(_run_scan(services, args))

    if args.refresh:
        args.scan_type = args.scan_type or ScanType.QUICK.value
        return asyncio.run(_run_refresh(services, args))

    if args.daemon:
        return asyncio.run(_run_daemon(services))

    if args.entries is not None:
        show_entries(services, args)
    elif args.runs is not None:
        show_runs(services, args.runs)
    elif args.stats:
        show_stats(services, args.hours)
    elif args.set_hostname or args.set_vendor:
        kind, (ip, value) = (("hostname", args.set_hostname) if args.set_hostname
                             else ("vendor", args.set_vendor))
        if orch.set_manual_attribute(ip, kind, value or None):
            print(f"  ✓ {kind} of {ip} set to {value or '(cleared)'}")
        else:
            print(f"  Host {ip} not found")
            return EXIT_FAILED
    elif args.delete:
        if orch.delete_entry(args.delete):
            print(f"  ✓ {args.delete} deleted")
        else:
            print(f"  Host {args.delete} not found")
            return EXIT_FAILED
    elif args.set_priority:
        try:
            data = json.loads(args.set_priority)
        except json.JSONDecodeError as exc:
            raise ValueError(f"--set-priority is not valid JSON: {exc}") from None
        _print_json(orch.update_priority_config(data).to_dict())
    elif args.priority:
        _print_json(orch.get_priority_config().to_dict())
    elif args.purge:
        _purge(services, args.purge)
    elif args.clear_db:
        confirm = input("  [!] Delete ALL scan data from database? (yes/no): ")
        if confirm.strip().lower() == "yes":
            services.retention.clear_all()
            print("  ✓ Database cleared")
        else:
            print("  Cancelled")
    elif args.db_stats:
        _print_json(services.retention.database_stats())
    elif args.compact:
        services.retention.compact()
        print("  ✓ Database compacted")
    elif args.scheduler_status:
        _print_json({
            "scheduler": services.scheduler.get_status(),
            "retention": services.retention.get_status(),
        })
    elif args.dashboard:
        dash_cfg = {
            "host": args.host or settings.dashboard.host,
            "port": args.dash_port or settings.dashboard.port,
        }
        from dashboard.app import run_dashboard
        run_dashboard(dash_cfg, services.repo)
    return EXIT_OK


def _purge(services: Services, which: str) -> None:
    ret = services.retention
    if which == "all":
        report = ret.purge_all()
        print(f"  ✓ Purged {report.total} row(s): history {report.history}, "
              f"offline {report.offline}, scans {report.scans}"
              + (" (compacted)" if report.compacted else ""))
        return
    n = {
        PurgeCategory.HISTORY.value: ret.purge_history_only,
        PurgeCategory.SCANS.value:   ret.purge_scans_only,
        PurgeCategory.OFFLINE.value: ret.purge_offline_only,
    }[which]()
    print(f"  ✓ Purged {n} {which} row(s)")


def main(argv: Optional[list] = None) -> None:
    ap = build_cli()
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        ap.print_help(); sys.exit(EXIT_OK)
    args = ap.parse_args(argv)

    if not args.no_logo and not args.quiet:
        print(BANNER)

    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        _print_error(exc)
        sys.exit(EXIT_INVALID)
    if args.db_path:
        settings.db_path = args.db_path
    set_level("DEBUG" if args.debug else "WARNING" if args.quiet else settings.log_level)

    try:
        code = _dispatch(args, settings)
    except KeyboardInterrupt:
        print("\n  [!] Interrupted by user")
        code = EXIT_OK
    except ScanAlreadyRunningError as exc:
        _print_error(exc)
        code = EXIT_BUSY
    except ValueError as exc:
        _print_error(exc)
        code = EXIT_INVALID
    except LanwatchError as exc:
        _print_error(exc)
        code = EXIT_FAILED
    except Exception as exc:
        log.exception(f"Fatal error: {exc}")
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == "__main__":
    main()
