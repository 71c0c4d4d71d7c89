"""
quote-sync CLI.

  quote-sync watch [SYMBOL=ref ...] [--interval S] [--cycles N] [--currency C]
  quote-sync search QUERY [--json]
  quote-sync status [--json]

watch runs the engine on an asyncio loop and prints a price table every
interval; search queries the first available provider; status prints the
provider health persisted by the last engine run.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional

from .. import __version__
from ..config import get_config
from ..db.health import ProviderHealthStore
from ..engine import QuoteSyncEngine
from ..errors import ConfigError
from ..providers.defaults import create_engine
from ..store.sqlite_session import sqlite_conn

logger = logging.getLogger(__name__)


def _get_db_path(args: argparse.Namespace) -> str:
    if getattr(args, "db", None):
        return args.db
    return get_config()["db"]["path"]


def _parse_tokens(specs: List[str]) -> Dict[str, Optional[str]]:
    """SYMBOL or SYMBOL=ref -> {SYMBOL: ref}."""
    out: Dict[str, Optional[str]] = {}
    for spec in specs:
        sym, _, ref = spec.partition("=")
        if sym.strip():
            out[sym.strip().upper()] = ref.strip() or None
    return out


def _fmt(x: Optional[float], digits: int = 4) -> str:
    return "-" if x is None else f"{x:,.{digits}f}"


def format_table(engine: QuoteSyncEngine, currency: str) -> str:
    rows = [f"{'SYMBOL':<8} {'PRICE':>16} {'24H %':>8} {'LOW':>16} {'HIGH':>16}"]
    for sym in engine.tracked_symbols():
        quote = engine.quotes.get_fallback(sym)
        q = quote.get(currency) if quote is not None else None
        if q is None:
            state = "fetching" if engine.is_pending(sym) else "n/a"
            rows.append(f"{sym:<8} {state:>16}")
            continue
        rows.append(
            f"{sym:<8} {_fmt(q.price):>16} {_fmt(q.change_24h, 2):>8} "
            f"{_fmt(q.low_24h):>16} {_fmt(q.high_24h):>16}"
        )
    if engine.last_error:
        rows.append(f"last error: {engine.last_error}")
    return "\n".join(rows)


async def _watch(args: argparse.Namespace) -> int:
    cfg = get_config()
    with sqlite_conn(_get_db_path(args)) as conn:
        engine = create_engine(cfg, conn=conn)
        engine.start()
        added = engine.add_symbols(_parse_tokens(args.tokens))
        if added:
            print(f"Tracking {', '.join(added)}", flush=True)
        try:
            cycle = 0
            while args.cycles <= 0 or cycle < args.cycles:
                await asyncio.sleep(args.interval)
                cycle += 1
                print(format_table(engine, args.currency.lower()), flush=True)
                print("", flush=True)
        finally:
            engine.close()
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_watch(args))
    except KeyboardInterrupt:
        return 130


async def _search(args: argparse.Namespace) -> int:
    with sqlite_conn(_get_db_path(args)) as conn:
        engine = create_engine(get_config(), conn=conn)
        try:
            results = await engine.search(args.query)
        finally:
            engine.close()
    if args.json:
        print(json.dumps([m.to_dict() for m in results], indent=2))
        return 0
    if not results:
        print("No results.")
        return 0
    for m in results:
        rank = m.market_rank if m.market_rank is not None else "-"
        print(f"{m.symbol:<10} {m.display_name:<32} rank={rank:<6} ref={m.provider_ref or '-'}")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    return asyncio.run(_search(args))


def cmd_status(args: argparse.Namespace) -> int:
    db_path = _get_db_path(args)
    if db_path != ":memory:" and not Path(db_path).is_file():
        print(f"DB not found: {db_path}", file=sys.stderr)
        return 1
    with sqlite_conn(db_path) as conn:
        records = ProviderHealthStore(conn).load_all()
    if args.json:
        print(json.dumps([asdict(r) for r in records], indent=2))
        return 0
    if not records:
        print("No provider health recorded yet.")
        return 0
    for r in records:
        state = "AVAILABLE" if r.available else f"COOLING until {r.cooldown_until}"
        print(f"{r.provider_name:<14} {state:<40} errors={r.consecutive_errors} last_ok={r.last_ok_at or '-'}")
        if r.last_error:
            print(f"{'':<14} last error: {r.last_error[:200]}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    ap = argparse.ArgumentParser(prog="quote-sync", description="Quote sync engine CLI")
    ap.add_argument("--version", action="version", version=f"quote-sync {__version__}")
    ap.add_argument("--db", default=None, help="SQLite DB path (default: config db.path)")
    ap.add_argument("--log-level", default="WARNING", help="DEBUG, INFO, WARNING, ERROR")
    sub = ap.add_subparsers(dest="command", required=True)

    p_watch = sub.add_parser("watch", help="Run the engine and print prices periodically")
    p_watch.add_argument("tokens", nargs="*", help="Extra tokens as SYMBOL or SYMBOL=provider_ref")
    p_watch.add_argument("--interval", type=float, default=5.0, help="Seconds between tables")
    p_watch.add_argument("--cycles", type=int, default=0, help="Stop after N tables (0 = forever)")
    p_watch.add_argument("--currency", default="usd", help="Currency column to show")
    p_watch.set_defaults(run=cmd_watch)

    p_search = sub.add_parser("search", help="Search provider catalogs for a token")
    p_search.add_argument("query")
    p_search.add_argument("--json", action="store_true", help="Output results as JSON")
    p_search.set_defaults(run=cmd_search)

    p_status = sub.add_parser("status", help="Show persisted provider health")
    p_status.add_argument("--json", action="store_true", help="Output records as JSON")
    p_status.set_defaults(run=cmd_status)

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.run(args)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
