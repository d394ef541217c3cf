"""Convert a JSON Lines event log into a CSV file.

This utility reads an event log produced by ``EventStore`` (a JSON
Lines file containing entries with ``type`` and ``data`` fields) and
writes a comma-separated values (CSV) file.  Each row corresponds to one
message.  Terminal messages (``order.completed`` / ``order.failed``) carry
their receipt nested under ``receipt``; its fields are lifted to the top
level so that a settlement run can be reviewed in a spreadsheet.

Usage::

    python scripts/event_log_to_csv.py --input artifacts/events/events.jsonl \
        --output artifacts/events/events.csv

If the ``--input`` argument is omitted, the script looks for the
``EVENT_STORE_PATH`` environment variable.  The ``--fields`` option
allows you to specify a comma-separated list of fields to include.  By
default the script includes::

    event_type, event_id, ts, match_id, status, intent, amount, reason, detail

Fields not present in a given message are left blank in the output.
"""

from __future__ import annotations

import argparse
import csv
import json
import os
from typing import Any, Dict, List

DEFAULT_FIELDS = "event_type,event_id,ts,match_id,status,intent,amount,reason,detail"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert the settlement event log to CSV")
    parser.add_argument(
        "--input",
        "-i",
        default=os.environ.get("EVENT_STORE_PATH"),
        help="Path to the JSON Lines event log. Defaults to ENV EVENT_STORE_PATH.",
    )
    parser.add_argument(
        "--output",
        "-o",
        default=None,
        help="Path to the output CSV file. Defaults to input path with .csv extension.",
    )
    parser.add_argument(
        "--fields",
        "-f",
        default=DEFAULT_FIELDS,
        help="Comma-separated list of fields to include in the CSV. "
        "The 'event_type' field is always included.",
    )
    return parser.parse_args()


def flatten(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    record: Dict[str, Any] = {"event_type": event_type}
    record.update(data)
    receipt = data.get("receipt")
    if isinstance(receipt, dict):
        record.update({k: v for k, v in receipt.items() if not isinstance(v, (dict, list))})
        error = receipt.get("error") or {}
        record.setdefault("reason", error.get("reason", ""))
        record["detail"] = error.get("detail", record.get("detail", ""))
    return record


def read_events(path: str) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as exc:
                print(f"Skipping line {number}: {exc}")
                continue
            if not isinstance(obj, dict):
                continue
            data = obj.get("data") or {}
            if not isinstance(data, dict):
                data = {}
            events.append(flatten(obj.get("type", ""), data))
    return events


def write_csv(events: List[Dict[str, Any]], output_path: str, fields: List[str]) -> None:
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output_path, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        for event in events:
            writer.writerow({key: event.get(key, "") for key in fields})


def main() -> None:
    args = parse_args()
    input_path = args.input
    if not input_path:
        raise SystemExit("Input file must be specified via --input or EVENT_STORE_PATH")
    output_path = args.output or (os.path.splitext(input_path)[0] + ".csv")
    fields = [f.strip() for f in args.fields.split(",") if f.strip()]
    if "event_type" not in fields:
        fields.insert(0, "event_type")
    events = read_events(input_path)
    write_csv(events, output_path, fields)
    print(f"Wrote {len(events)} events to {output_path}")


if __name__ == "__main__":
    main()
