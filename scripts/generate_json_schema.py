"""
generate_json_schema
====================

This script exports JSON Schema definitions for the pipeline message
contracts.  It uses Pydantic's built-in JSON schema generator to produce
one schema per topic from ``settlement.models_events.MESSAGE_TYPES``, plus
the ingress ``Request`` and the terminal ``Receipt``.  The resulting schema
can be handed to the teams that publish requests or consume receipts.

Usage
-----

Run this script from the project root and specify an output file:

.. code-block:: bash

    python scripts/generate_json_schema.py --out schemas.json

If no output file is provided, the schema will be printed to stdout.
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, Type

from pydantic import BaseModel

from settlement.models import Receipt, Request
from settlement.models_events import MESSAGE_TYPES


def collect_models() -> Dict[str, Type[BaseModel]]:
    models: Dict[str, Type[BaseModel]] = {"Request": Request, "Receipt": Receipt}
    for topic, cls in MESSAGE_TYPES.items():
        models[topic] = cls
    return models


def generate_schema(models: Dict[str, Type[BaseModel]]) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "definitions": {},
    }
    for name, model in models.items():
        # Wire names (eventId, from, to) are what producers send
        schema["definitions"][name] = model.model_json_schema(by_alias=True)
    return schema


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Generate JSON schemas for the settlement message contracts.")
    ap.add_argument("--out", help="Output file path. Defaults to stdout if omitted.")
    return ap.parse_args()


def main() -> None:
    args = parse_args()
    schema = generate_schema(collect_models())
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(schema, f, indent=2)
        print(f"Schema written to {args.out}")
    else:
        print(json.dumps(schema, indent=2))


if __name__ == "__main__":
    main()
