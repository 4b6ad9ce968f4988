#!/usr/bin/env python3
from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cache import CacheFormatError, load_cache
from .dashboard_payload import build_dashboard_payload
from .utils import env, format_amount, write_text


def _d(value: Any) -> Decimal:
    return Decimal(str(value or "0"))


def render_markdown(doc: Dict[str, Any], *, now_ts: Optional[int] = None, last_days: int = 30) -> str:
    payload = build_dashboard_payload(doc, now_ts=now_ts)
    totals = payload["totals"]

    lines: List[str] = []
    lines.append("# TORUS: creates, stakes and buy & process")
    lines.append("")
    lines.append(f"- Generated: `{payload['generatedAt']}`")
    lines.append(f"- Protocol day: `{payload['currentProtocolDay']}`")
    lines.append(f"- Last processed block: `{payload['lastProcessedBlock']}`")
    lines.append(f"- Creates: `{int(totals.get('createCount') or 0):,}`, stakes: `{int(totals.get('stakeCount') or 0):,}`")
    lines.append(
        f"- Paid: `{format_amount(_d(totals.get('totalETH')), places=4)} ETH`, "
        f"`{format_amount(_d(totals.get('totalTitanX')), places=0)} TitanX`"
    )
    lines.append(f"- Active staked principal: `{format_amount(_d(totals.get('activeStakedPrincipal')))} TORUS`")
    lines.append(f"- LP positions: `{payload['lp']['active']}` active of `{payload['lp']['positions']}`")
    lines.append("")

    lines.append(f"## Daily activity (last {last_days} days)")
    lines.append("")
    lines.append("| Day | Date | Creates | Stakes | ETH paid | TitanX paid | Reward pool | Total shares | TORUS burned |")
    lines.append("|---:|---|---:|---:|---:|---:|---:|---:|---:|")
    for row in payload["daily"][-last_days:]:
        eth = _d(row["createETH"]) + _d(row["stakeETH"])
        titanx = _d(row["createTitanX"]) + _d(row["stakeTitanX"])
        lines.append(
            f"| {row['day']} | {row['date']} | {row['creates']:,} | {row['stakes']:,} | {format_amount(eth, places=4)} "
            f"| {format_amount(titanx, places=0)} | {format_amount(_d(row.get('rewardPool')))} "
            f"| {format_amount(_d(row.get('totalShares')), places=0)} | {format_amount(_d(row.get('torusBurned')))} |"
        )
    lines.append("")

    upcoming = [m for m in payload["maturities"] if m["day"] >= payload["currentProtocolDay"]][:last_days]
    lines.append("## Upcoming maturities")
    lines.append("")
    if not upcoming:
        lines.append("_None._")
    else:
        lines.append("| Day | Date | Positions | TORUS released |")
        lines.append("|---:|---|---:|---:|")
        for m in upcoming:
            lines.append(f"| {m['day']} | {m['date']} | {m['positions']:,} | {format_amount(_d(m['torusReleased']))} |")
    lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def main() -> int:
    ap = argparse.ArgumentParser(description="Render a Markdown summary of the dashboard cache.")
    ap.add_argument("--cache", default=env("TORUS_CACHE_PATH", "public/data/cached-data.json"))
    ap.add_argument("--out-md", default="reports/torus-summary.md")
    ap.add_argument("--days", type=int, default=30)
    args = ap.parse_args()

    try:
        doc = load_cache(Path(args.cache))
    except CacheFormatError as e:
        raise SystemExit(str(e))
    write_text(Path(args.out_md), render_markdown(doc, last_days=int(args.days)))
    print(f"Wrote {args.out_md}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
