from __future__ import annotations

import streamlit as st

from meatledger.config import configure_logging, get_settings
from meatledger.db import ensure_schema, get_conn
from meatledger.services.demo_data import default_actor
from meatledger.services.reports import sales_summary

st.set_page_config(page_title="Meat Ledger", page_icon="🥩", layout="wide")

st.title("🥩 Meat Ledger")
st.caption("Carcass-to-counter costing: receiving, cutting yield, FIFO stock, POS sales and end-of-day reconciliation.")

settings = get_settings()
configure_logging(settings)
conn = get_conn(settings.db_path, settings.lock_timeout_s)
ensure_schema(conn)
actor = default_actor(conn)

with st.sidebar:
    st.subheader("Environment")
    st.write(f"**Data directory:** `{settings.data_dir}`")
    st.write(f"**Database:** `{settings.db_path.name}`")
    st.write(f"**Base currency:** {settings.currency} • **VAT:** {settings.vat_rate_percent:.1f}%")

today = sales_summary(conn, actor)
c1, c2, c3, c4 = st.columns(4)
c1.metric("Sales today", f"{today['total_sales']:,.2f}")
c2.metric("Transactions", f"{today['transaction_count']}")
c3.metric("Kg sold", f"{today['total_weight_kg']:,.3f}")
c4.metric("Margin %", f"{today['margin_percent']:.1f}%")

st.info(
    "Use the left sidebar navigation. Start with **🧪 Data Management** to load demo data, then follow a carcass "
    "through **Receiving**, **Cutting Room**, **Point of Sale** and **Daily Closing**.",
    icon="ℹ️",
)
