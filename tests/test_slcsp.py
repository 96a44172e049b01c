from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest

import slcsp
from sheet_engine import Matches, Seed, parse_lines


SLCSP_CSV = """zipcode,rate
64148,
67118,
40813,
54923,
"""

ZIPS_CSV = """zipcode,state,county_code,name,rate_area
64148,MO,29095,Jackson,3
67118,KS,20015,Butler,6
67118,KS,20173,Sedgwick,6
40813,KY,21013,Bell,8
40813,KY,21095,Harlan,9
"""

PLANS_CSV = """plan_id,state,metal_level,rate,rate_area
74449NR9870320,MO,Silver,298.62,3
26325VH2723968,MO,Silver,421.43,3
36749UJ4718296,MO,Gold,270.00,3
78421VV7272023,MO,Silver,290.05,3
10001AA0000001,MO,Silver,290.05,3
83472WG4628722,KS,Silver,212.35,6
12345AB1234567,KS,Silver,212.35,6
55555CC5555555,KS,Silver,250,6
77777DD7777777,KY,Silver,300.00,8
77777DD7777778,KY,Silver,310.00,8
"""

EXPECTED = [
    "zipcode,rate",
    "64148,298.62",
    "67118,250.00",
    "40813,",
    "54923,",
]


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    (tmp_path / "slcsp.csv").write_text(SLCSP_CSV, encoding="utf-8")
    (tmp_path / "zips.csv").write_text(ZIPS_CSV, encoding="utf-8")
    (tmp_path / "plans.csv").write_text(PLANS_CSV, encoding="utf-8")
    return tmp_path


def _plans(*rates):
    return [{"plan_id": str(i), "rate": r} for i, r in enumerate(rates)]


def test_distinct_rates_sorted_numerically():
    assert slcsp.distinct_rates(_plans("300", "95.5", "1000", "95.5")) == ["95.5", "300", "1000"]


def test_distinct_rates_ignores_missing_rate():
    assert slcsp.distinct_rates(_plans("", "10")) == ["10"]


def test_single_rate_area():
    assert slcsp.is_single_rate_area([])
    assert slcsp.is_single_rate_area([{"state": "KS", "rate_area": "6"}] * 2)
    assert not slcsp.is_single_rate_area([{"state": "KY", "rate_area": "8"}, {"state": "KY", "rate_area": "9"}])
    assert not slcsp.is_single_rate_area([{"state": "KS", "rate_area": "1"}, {"state": "MO", "rate_area": "1"}])


def test_second_lowest_rate():
    row = {
        "slcsp": Seed({"zipcode": "1", "rate": ""}),
        "zips": Matches([{"state": "MO", "rate_area": "3"}]),
        "plans": Matches(_plans("245.2", "200", "245.2")),
    }
    assert slcsp.second_lowest_rate(row) == "245.20"


def test_second_lowest_rate_needs_two_distinct_rates():
    row = {
        "slcsp": Seed({"zipcode": "1", "rate": ""}),
        "zips": Matches([{"state": "MO", "rate_area": "3"}]),
        "plans": Matches(_plans("200", "200")),
    }
    assert slcsp.second_lowest_rate(row) == ""


def test_format_rates():
    lines = slcsp.format_rates(("zipcode", "rate"), [("1", "2.00"), ("3", "")])
    assert lines == ["zipcode,rate", "1,2.00", "3,"]


def test_write_rates():
    buf = io.StringIO()
    slcsp.write_rates(("zipcode", "rate"), [("1", "2.00")], buf)
    assert buf.getvalue() == "zipcode,rate\n1,2.00\n"


def test_compute_rates_from_merged_sheet():
    seed = parse_lines(SLCSP_CSV.splitlines())
    zips = parse_lines(ZIPS_CSV.splitlines())
    plans = parse_lines(PLANS_CSV.splitlines())
    merged = slcsp.merge_sheets(slcsp.build_steps(seed, zips, plans))
    # no metal level filter here, so the 270.00 gold plan is the cheapest in MO
    assert slcsp.compute_rates(merged)[0] == ("64148", "290.05")
    assert merged.rows[0]["slcsp"].record == {"zipcode": "64148", "rate": ""}


def test_run(data_dir: Path):
    seed, results = asyncio.run(slcsp.run(data_dir))
    assert seed.headers == ("zipcode", "rate")
    assert slcsp.format_rates(seed.headers, results) == EXPECTED


def test_run_other_metal_level(data_dir: Path):
    _, results = asyncio.run(slcsp.run(data_dir, metal_level="Gold"))
    assert results == [("64148", ""), ("67118", ""), ("40813", ""), ("54923", "")]


def test_main_stdout(data_dir: Path, capsys):
    assert slcsp.main(["--data-dir", str(data_dir)]) == 0
    assert capsys.readouterr().out.splitlines() == EXPECTED


def test_main_output_file(data_dir: Path, tmp_path: Path):
    out = tmp_path / "answer.csv"
    assert slcsp.main(["--data-dir", str(data_dir), "--output", str(out)]) == 0
    assert out.read_text(encoding="utf-8").splitlines() == EXPECTED


def test_main_missing_source(tmp_path: Path, capsys):
    assert slcsp.main(["--data-dir", str(tmp_path)]) == 1
    assert capsys.readouterr().out == ""


def test_distinct_rates_skips_non_numeric():
    assert slcsp.distinct_rates(_plans("N/A", "310", "abc", "300", "NaN")) == ["300", "310"]


def test_distinct_rates_accepts_one_shot_iterable():
    assert slcsp.distinct_rates(iter(_plans("2", "1", "2"))) == ["1", "2"]


def test_format_rate_rounds_half_up():
    assert slcsp.format_rate("0.125") == "0.13"
    assert slcsp.format_rate("245.2") == "245.20"
    assert slcsp.format_rate("212.345") == "212.35"
    assert slcsp.format_rate("250") == "250.00"


def test_zipcode_spanning_two_states_is_ambiguous():
    # same rate_area number in two states is two different rate areas
    seed = parse_lines(["zipcode,rate", "99999,"])
    zips = parse_lines(["zipcode,state,county_code,name,rate_area", "99999,KS,1,A,1", "99999,MO,2,B,1"])
    plans = parse_lines([
        "plan_id,state,metal_level,rate,rate_area",
        "p1,KS,Silver,100,1",
        "p2,KS,Silver,200,1",
        "p3,MO,Silver,150,1",
    ])
    merged = slcsp.merge_sheets(slcsp.build_steps(seed, zips, plans))
    assert len(merged.rows[0]["plans"]) == 3
    assert slcsp.compute_rates(merged) == [("99999", "")]


def test_main_with_bom_and_bad_rate(data_dir: Path, capsys):
    (data_dir / "slcsp.csv").write_bytes(b"\xef\xbb\xbf" + SLCSP_CSV.encode("utf-8"))
    with (data_dir / "plans.csv").open("a", encoding="utf-8") as fh:
        fh.write("99999XX9999999,MO,Silver,N/A,3\n")
    assert slcsp.main(["--data-dir", str(data_dir)]) == 0
    assert capsys.readouterr().out.splitlines() == EXPECTED
