from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


class SheetError(Exception):
    """Base error for the sheet join engine."""

class SourceUnavailable(SheetError):
    pass

class MergeError(SheetError):
    pass


Record = Dict[str, str]
Predicate = Callable[[Record], bool]
Conjunction = Sequence[Tuple[str, str]]
FilterSet = Sequence[Conjunction]
Source = Union[str, PathLike]


# A parsed sheet. Rows are plain dicts keyed by header, in header order.
@dataclass(frozen=True)
class Table:
    """Header list plus the records read from one source."""
    headers: Tuple[str, ...] = ()
    rows: Tuple[Record, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "headers", tuple(self.headers))
        object.__setattr__(self, "rows", tuple(self.rows))

    def to_csv(self, delimiter: str = ",") -> str:
        out = [delimiter.join(self.headers)]
        for r in self.rows:
            out.append(delimiter.join(r[h] for h in self.headers))
        return "\n".join(out)

    def pretty(self, max_width: int = 24) -> str:
        cols = list(self.headers)
        data = [cols] + [[r[h] for h in cols] for r in self.rows]
        widths = [0] * len(cols)
        for row in data:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(cell))
        widths = [min(w, max_width) for w in widths]

        def fmt(row):
            cells = []
            for i, cell in enumerate(row):
                if len(cell) > widths[i]:
                    cell = cell[: max(0, widths[i] - 1)] + "…"
                cells.append(cell.ljust(widths[i]))
            return " | ".join(cells)

        lines = [fmt(cols), "-+-".join("-" * w for w in widths)]
        for row in data[1:]:
            lines.append(fmt(row))
        return "\n".join(lines)


@dataclass(frozen=True)
class JoinStep:
    """One stage of a merge: the table, its name in merged rows and the
    columns projected forward to filter the next stage's table."""
    table: Table
    name: str
    join_columns: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if self.join_columns is not None:
            object.__setattr__(self, "join_columns", tuple(self.join_columns))


# Value stored under a step name inside a merged row.
@dataclass(frozen=True)
class Seed:
    record: Record

@dataclass(frozen=True)
class Matches:
    records: Tuple[Record, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "records", tuple(self.records))

    def __iter__(self):
        return iter(self.records)

    def __len__(self):
        return len(self.records)


MergedRow = Dict[str, Union[Seed, Matches]]


@dataclass
class MergedSheet:
    headers: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    rows: List[MergedRow] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        rows = []
        for row in self.rows:
            out: Dict[str, Any] = {}
            for name, value in row.items():
                if isinstance(value, Seed):
                    out[name] = dict(value.record)
                else:
                    out[name] = [dict(r) for r in value.records]
            rows.append(out)
        return {"headers": {k: list(v) for k, v in self.headers.items()}, "rows": rows}


def _assert(cond: bool, msg: str, err=SheetError):
    if not cond:
        raise err(msg)

########################
# Query Filter
########################

# Filter sets are a disjunction of conjunction groups:
# [
#   [("state", "MO"), ("rate_area", "3")],   # state = MO AND rate_area = 3
#   [("state", "KS"), ("rate_area", "1")],   # OR state = KS AND rate_area = 1
# ]
# An empty filter set has no group to satisfy, so it rejects every record.
# Callers wanting "accept all" pass no filter at all.
def build_filter(filter_sets: FilterSet) -> Predicate:
    groups = [tuple(group) for group in filter_sets]

    def predicate(row: Record) -> bool:
        return any(all(row.get(col) == val for col, val in group) for group in groups)

    return predicate

def simple_filter(column: str, value: str) -> List[List[Tuple[str, str]]]:
    """Filter set holding the single test column = value."""
    return [[(column, value)]]

def _accept_all(row: Record) -> bool:
    return True

########################
# Join Key Mapper
########################

# Row -> [(col, value), ...] for the given columns, in order, duplicates kept.
# The result is one conjunction group, i.e. the x.col = y.col part of a join.
# A column the row lacks projects as "" and only matches empty values.
def build_join_keys(join_columns: Sequence[str]) -> Callable[[Record], List[Tuple[str, str]]]:
    cols = list(join_columns)

    def mapper(row: Record) -> List[Tuple[str, str]]:
        return [(c, row.get(c, "")) for c in cols]

    return mapper

########################
# Table Parser
########################

# 1. strip each line (drops the \r of CRLF input too and a leading BOM),
#    skip blank ones
# 2. split on "," - no quoting, a comma inside a field is not supported
# 3. first line is the header, later lines are zipped against it:
#    headers = ["a","b","c"], line "1,2" -> {"a": "1", "b": "2", "c": ""}
#    extra trailing fields are dropped
# 4. records failing the predicate never make it into rows
def parse_lines(lines: Iterable[str], predicate: Optional[Predicate] = None) -> Table:
    keep = predicate or _accept_all
    headers: List[str] = []
    rows: List[Record] = []
    dropped = 0
    for line in lines:
        line = line.strip().lstrip("\ufeff")
        # blank lines are dropped rather than read as a record of empty fields
        if not line:
            continue
        fields = line.split(",")
        if not headers:
            headers = fields
            continue
        row = _zip_row(headers, fields)
        if keep(row):
            rows.append(row)
        else:
            dropped += 1
    logger.debug("parsed %d rows (%d filtered out), headers=%s", len(rows), dropped, headers)
    return Table(headers, rows)

def _zip_row(headers: List[str], fields: List[str]) -> Record:
    return {h: (fields[i] if i < len(fields) else "") for i, h in enumerate(headers)}

def resolve_source(source: Source) -> Path:
    """`plans` -> `plans.csv`; anything with a suffix is used as given."""
    path = Path(source)
    return path if path.suffix else path.with_name(path.name + ".csv")

def read_table(source: Source, filter_sets: Optional[FilterSet] = None) -> Table:
    path = resolve_source(source)
    predicate = build_filter(filter_sets) if filter_sets is not None else None
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as fh:
            table = parse_lines(fh, predicate)
    except FileNotFoundError as e:
        raise SourceUnavailable(f"Source {str(path)!r} not found") from e
    except (OSError, UnicodeDecodeError) as e:
        raise SourceUnavailable(f"Source {str(path)!r} could not be read: {e}") from e
    logger.debug("read %s: %d rows", path, len(table.rows))
    return table

async def load_table(source: Source, filter_sets: Optional[FilterSet] = None) -> Table:
    return await asyncio.to_thread(read_table, source, filter_sets)

# Sources are paths or (path, filter_sets) pairs. All are read concurrently,
# results come back in argument order, and any failure fails the whole load.
async def load_tables(*sources: Union[Source, Tuple[Source, Optional[FilterSet]]]) -> List[Table]:
    jobs = []
    for src in sources:
        if isinstance(src, tuple):
            path, filter_sets = src
            jobs.append(load_table(path, filter_sets))
        else:
            jobs.append(load_table(src))
    return list(await asyncio.gather(*jobs))

########################
# Sheet Merger
########################

# Folds over the join steps in order.
# 1.  Step 0 seeds one merged row per table row: {name: Seed(row)}
# 2.  Step k builds, for every merged row, a filter from step k-1's value:
#     Seed     -> one conjunction group from that record's join keys
#     Matches  -> one group per matched record, so the next table is filtered
#                 against ANY upstream match (one-to-many fan-out carries on)
# 3.  Every record of step k's table passing that filter, in table order,
#     lands under step k's name as Matches (possibly empty).
# 4.  Rows are copied, never updated in place; input tables are only read.
def merge_sheets(steps: Sequence[JoinStep]) -> MergedSheet:
    merged = MergedSheet()
    prev: Optional[JoinStep] = None
    for idx, step in enumerate(steps):
        _assert(step.name not in merged.headers, f"Merge: duplicate step name {step.name!r}", MergeError)
        _assert(
            idx == len(steps) - 1 or step.join_columns is not None,
            f"Merge: step {step.name!r} is followed by another step but has no join columns",
            MergeError,
        )
        merged.headers[step.name] = step.table.headers
        if prev is None:
            merged.rows = [{step.name: Seed(row)} for row in step.table.rows]
        else:
            merged.rows = _join_step(merged.rows, prev, step)
        logger.debug("merge step %r: %d rows", step.name, len(merged.rows))
        prev = step
    return merged

def _join_step(rows: List[MergedRow], prev: JoinStep, step: JoinStep) -> List[MergedRow]:
    join_keys = build_join_keys(prev.join_columns)
    out = []
    for row in rows:
        upstream = row[prev.name]
        if isinstance(upstream, Seed):
            predicate = build_filter([join_keys(upstream.record)])
        else:
            predicate = build_filter([join_keys(r) for r in upstream.records])
        matched = Matches([r for r in step.table.rows if predicate(r)])
        out.append({**row, step.name: matched})
    return out
