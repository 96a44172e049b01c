#!/usr/bin/env python3
"""
Second lowest cost silver plan (SLCSP) per zipcode.

Loads the seed sheet of zipcodes, the zip -> rate area sheet and the plans
sheet, joins them with the sheet engine and prints `zipcode,rate` lines.

USAGE:
  python slcsp.py                          # reads ./slcsp.csv, ./zips.csv, ./plans.csv
  python slcsp.py --data-dir ./data        # inputs somewhere else
  python slcsp.py --output answer.csv      # write to a file instead of stdout
  python slcsp.py --metal-level Gold       # second lowest gold plan instead
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import IO, Iterable, List, Optional, Sequence, Tuple

from sheet_engine import (
    JoinStep, MergedRow, MergedSheet, Record, SheetError, Table,
    load_tables, merge_sheets, simple_filter,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults, override with env vars or CLI flags
# ---------------------------------------------------------------------------
DATA_DIR = Path(os.environ.get("SLCSP_DATA_DIR", "."))
SLCSP_SOURCE = os.environ.get("SLCSP_SOURCE", "slcsp")
ZIPS_SOURCE = os.environ.get("ZIPS_SOURCE", "zips")
PLANS_SOURCE = os.environ.get("PLANS_SOURCE", "plans")
METAL_LEVEL = "Silver"
CENTS = Decimal("0.01")

SEED_NAME = "slcsp"
ZIPS_NAME = "zips"
PLANS_NAME = "plans"


# ---------------------------------------------------------------------------
# Rate rule
# ---------------------------------------------------------------------------

def _parse_rate(rate: str) -> Optional[Decimal]:
    try:
        value = Decimal(rate)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def distinct_rates(plans: Iterable[Record]) -> List[str]:
    """Rates with repeats removed, cheapest first.

    Plans whose rate is missing or not a number are ignored. A plan is
    dropped when a later plan carries the same rate string, so the last
    occurrence of each rate survives. Ordering is numeric and stable.
    """
    rates = []
    for p in plans:
        rate = p.get("rate", "")
        if _parse_rate(rate) is not None:
            rates.append(rate)
        elif rate:
            logger.debug("plan %s: ignoring non-numeric rate %r", p.get("plan_id", "?"), rate)
    unique = [r for i, r in enumerate(rates) if r not in rates[i + 1:]]
    return sorted(unique, key=_parse_rate)


def format_rate(rate: str) -> str:
    """Two decimals, halves rounded up: "0.125" -> "0.13"."""
    return str(Decimal(rate).quantize(CENTS, rounding=ROUND_HALF_UP))


def is_single_rate_area(zips: Iterable[Record]) -> bool:
    # a rate area is only unique within its state
    areas = {(z.get("state", ""), z.get("rate_area", "")) for z in zips}
    return len(areas) <= 1


def second_lowest_rate(row: MergedRow) -> str:
    zips = row[ZIPS_NAME]
    rates = distinct_rates(row[PLANS_NAME])
    if not is_single_rate_area(zips) or len(rates) < 2:
        return ""
    return format_rate(rates[1])


def compute_rates(sheet: MergedSheet) -> List[Tuple[str, str]]:
    """(zipcode, rate) for every seed row, in seed order."""
    return [(row[SEED_NAME].record["zipcode"], second_lowest_rate(row)) for row in sheet.rows]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def build_steps(seed: Table, zips: Table, plans: Table) -> List[JoinStep]:
    return [
        # slcsp.zipcode = zips.zipcode
        JoinStep(seed, SEED_NAME, ("zipcode",)),
        # zips.state = plans.state AND zips.rate_area = plans.rate_area
        JoinStep(zips, ZIPS_NAME, ("state", "rate_area")),
        JoinStep(plans, PLANS_NAME),
    ]


async def run(
    data_dir: Path = DATA_DIR,
    seed_source: str = SLCSP_SOURCE,
    zips_source: str = ZIPS_SOURCE,
    plans_source: str = PLANS_SOURCE,
    metal_level: str = METAL_LEVEL,
) -> Tuple[Table, List[Tuple[str, str]]]:
    """Load the three sheets concurrently, merge them, apply the rate rule.

    Returns the seed table (its headers head the output) and the results.
    """
    data_dir = Path(data_dir)
    seed, zips, plans = await load_tables(
        data_dir / seed_source,
        data_dir / zips_source,
        (data_dir / plans_source, simple_filter("metal_level", metal_level)),
    )
    logger.info("loaded %d zipcodes, %d zip rows, %d %s plans",
                len(seed.rows), len(zips.rows), len(plans.rows), metal_level.lower())

    merged = merge_sheets(build_steps(seed, zips, plans))
    results = compute_rates(merged)
    logger.info("%d of %d zipcodes have a rate", sum(1 for _, r in results if r), len(results))
    return seed, results


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def format_rates(headers: Sequence[str], results: Iterable[Tuple[str, str]]) -> List[str]:
    lines = [",".join(headers)]
    lines.extend(f"{zipcode},{rate}" for zipcode, rate in results)
    return lines


def write_rates(headers: Sequence[str], results: Iterable[Tuple[str, str]], out: IO[str]) -> None:
    for line in format_rates(headers, results):
        out.write(line + "\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slcsp",
        description="Second lowest cost plan per zipcode.",
    )
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR, help="Directory holding the input CSVs")
    parser.add_argument("--slcsp", default=SLCSP_SOURCE, help="Seed sheet of zipcodes")
    parser.add_argument("--zips", default=ZIPS_SOURCE, help="Zipcode to rate area sheet")
    parser.add_argument("--plans", default=PLANS_SOURCE, help="Plans sheet")
    parser.add_argument("--metal-level", default=METAL_LEVEL, help="Plan metal level to rank")
    parser.add_argument("--output", "-o", type=Path, default=None, help="Write here instead of stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        seed, results = asyncio.run(
            run(args.data_dir, args.slcsp, args.zips, args.plans, args.metal_level)
        )
    except SheetError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1

    if args.output is None:
        write_rates(seed.headers, results, sys.stdout)
    else:
        with args.output.open("w", encoding="utf-8", newline="") as fh:
            write_rates(seed.headers, results, fh)
        logger.info("wrote %d rows to %s", len(results), args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
