import json

import streamlit as st
from sheet_engine import SheetError, build_filter, merge_sheets, parse_lines, simple_filter
from slcsp import METAL_LEVEL, build_steps, compute_rates, format_rates

st.set_page_config(page_title="Mini Sheet Join: SLCSP Runner", page_icon="🧮", layout="wide")

DEFAULT_SLCSP = """zipcode,rate
64148,
67118,
40813,
"""

DEFAULT_ZIPS = """zipcode,state,county_code,name,rate_area
64148,MO,29095,Jackson,3
67118,KS,20015,Butler,6
67118,KS,20173,Sedgwick,6
40813,KY,21013,Bell,8
40813,KY,21095,Harlan,9
"""

DEFAULT_PLANS = """plan_id,state,metal_level,rate,rate_area
74449NR9870320,MO,Silver,298.62,3
26325VH2723968,MO,Silver,421.43,3
36749UJ4718296,MO,Gold,270.00,3
78421VV7272023,MO,Silver,290.05,3
83472WG4628722,KS,Silver,212.35,6
12345AB1234567,KS,Silver,212.35,6
"""

for key, default in (("slcsp", DEFAULT_SLCSP), ("zips", DEFAULT_ZIPS), ("plans", DEFAULT_PLANS)):
    if key not in st.session_state:
        st.session_state[key] = default

st.title("🧮 Mini Sheet Join — SLCSP Runner")
st.write(
    "Paste the three sheets, pick a metal level and click **Run**. "
    "Sheets are joined `slcsp.zipcode = zips.zipcode`, then "
    "`zips.state, zips.rate_area = plans.state, plans.rate_area`."
)

# Inputs
col1, col2, col3 = st.columns([1, 1, 1], gap="large")
with col1:
    st.subheader("slcsp")
    st.text_area("Zipcodes to price", height=260, key="slcsp")
with col2:
    st.subheader("zips")
    st.text_area("Zipcode to rate area", height=260, key="zips")
with col3:
    st.subheader("plans")
    st.text_area("Plans", height=260, key="plans")

metal_level = st.text_input("Metal level", value=METAL_LEVEL)

seed = parse_lines(st.session_state.slcsp.splitlines())
zips = parse_lines(st.session_state.zips.splitlines())
plans = parse_lines(st.session_state.plans.splitlines(), build_filter(simple_filter("metal_level", metal_level)))

# Visualize input sheets
st.subheader("👀 Parsed sheets")
for name, table in (("slcsp", seed), ("zips", zips), (f"plans ({metal_level})", plans)):
    st.markdown(f"**{name}** — headers: {list(table.headers)}  \n_rows: {len(table.rows)}_")
    st.code(table.pretty(), language="text")

# Run
if st.button("▶️ Run", type="primary"):
    try:
        merged = merge_sheets(build_steps(seed, zips, plans))
        results = compute_rates(merged)
        st.success("Sheets merged successfully!")

        tabs = st.tabs(["Result Table", "Result Text", "Merged Sheet"])
        with tabs[0]:
            if results:
                st.table([{"zipcode": z, "rate": r} for z, r in results])
                csv = "\n".join(format_rates(seed.headers, results))
                st.download_button("Download CSV", data=csv, file_name="slcsp.csv", mime="text/csv")
            else:
                st.info("No zipcodes to price.")
        with tabs[1]:
            st.code("\n".join(format_rates(seed.headers, results)), language="text")
        with tabs[2]:
            st.code(json.dumps(merged.to_dict(), indent=2), language="json")

    except SheetError as e:
        st.error(f"{type(e).__name__}: {e}")
    except Exception as e:
        st.exception(e)
else:
    st.info("Edit the sheets, then click **Run**.")
