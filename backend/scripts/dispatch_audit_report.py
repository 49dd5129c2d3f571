#!/usr/bin/env python3
import argparse
import json
import os
import sqlite3
import sys
from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from glamdispatch.config import DB_PATH  # noqa: E402

RESPONSE_EVENTS = {"ACCEPT", "DECLINE", "EXPIRE", "WITHDRAW"}
# Cancelling closes an open proposal without a provider answer.
CLOSING_EVENTS = RESPONSE_EVENTS | {"CANCEL"}


def load_events(db_path: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        query = "SELECT * FROM booking_events"
        params: List[Any] = []
        if since:
            query += " WHERE created_at >= ?"
            params.append(since)
        query += " ORDER BY created_at, rowid"
        return [dict(row) for row in conn.execute(query, tuple(params)).fetchall()]
    finally:
        conn.close()


def _parse_time(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return None


def build_report(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    event_counts: Counter[str] = Counter()
    transition_counts: Counter[str] = Counter()
    cancel_roles: Counter[str] = Counter()
    response_minutes: Dict[str, List[float]] = defaultdict(list)
    open_proposals: Dict[str, Dict[str, Any]] = {}

    for row in rows:
        event_type = str(row.get("event_type", "UNKNOWN"))
        event_counts[event_type] += 1
        if row.get("from_status") and row.get("to_status") and row["from_status"] != row["to_status"]:
            transition_counts[f"{row['from_status']} -> {row['to_status']}"] += 1
        if event_type == "CANCEL":
            cancel_roles[str(row.get("actor_role", "UNKNOWN"))] += 1

        booking_id = str(row.get("booking_id", ""))
        if event_type == "PROPOSE":
            open_proposals[booking_id] = row
        elif event_type in CLOSING_EVENTS and booking_id in open_proposals:
            proposed = open_proposals.pop(booking_id)
            if event_type not in RESPONSE_EVENTS:
                continue
            start = _parse_time(proposed.get("created_at"))
            end = _parse_time(row.get("created_at"))
            if start and end:
                provider = str(proposed.get("provider_id") or "unknown")
                response_minutes[provider].append((end - start).total_seconds() / 60)

    proposals = event_counts.get("PROPOSE", 0)
    accepted = event_counts.get("ACCEPT", 0)
    lost = event_counts.get("DECLINE", 0) + event_counts.get("EXPIRE", 0)
    return {
        "total_events": len(rows),
        "event_counts": dict(event_counts),
        "transition_counts": dict(transition_counts.most_common()),
        "cancellations_by_role": dict(cancel_roles),
        "proposals": {
            "total": proposals,
            "acceptance_rate": round(accepted / proposals, 4) if proposals else 0.0,
            "decline_or_expire_rate": round(lost / proposals, 4) if proposals else 0.0,
            "open": len(open_proposals),
        },
        "avg_response_minutes_by_provider": {
            provider: round(sum(values) / len(values), 2) for provider, values in sorted(response_minutes.items())
        },
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total events: {report['total_events']}")
    proposals = report["proposals"]
    print(
        f"Proposals: total={proposals['total']} open={proposals['open']} "
        f"accepted={proposals['acceptance_rate']:.2%} lost={proposals['decline_or_expire_rate']:.2%}"
    )
    print("Transitions:")
    for transition, count in report["transition_counts"].items():
        print(f"  - {transition}: {count}")
    if report["cancellations_by_role"]:
        print("Cancellations by role:")
        for role, count in sorted(report["cancellations_by_role"].items(), key=lambda x: x[1], reverse=True):
            print(f"  - {role}: {count}")
    if report["avg_response_minutes_by_provider"]:
        print("Average response time (minutes):")
        for provider, minutes in report["avg_response_minutes_by_provider"].items():
            print(f"  - {provider}: {minutes:.1f}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize the GlamDispatch booking audit log.")
    parser.add_argument("--db", default=DB_PATH, help="Path to the dispatch sqlite database.")
    parser.add_argument("--since", default="", help="Only include events at or after this ISO timestamp.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    if not Path(args.db).exists():
        print(f"Database not found: {args.db}", file=sys.stderr)
        return 1

    report = build_report(load_events(args.db, since=args.since or None))
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
