from __future__ import annotations

import streamlit as st

st.set_page_config(page_title="Meat Ledger", page_icon="🥩", layout="wide")

pages = [
    st.Page("home.py", title="Home", icon="🏠"),
    st.Page("pages/1_📥_Receiving.py", title="Carcass Receiving", icon="📥"),
    st.Page("pages/2_🔪_Cutting.py", title="Cutting Room", icon="🔪"),
    st.Page("pages/3_📦_Stock.py", title="Stock", icon="📦"),
    st.Page("pages/4_🛒_POS.py", title="Point of Sale", icon="🛒"),
    st.Page("pages/5_✅_Daily_Closing.py", title="Daily Closing", icon="✅"),
    st.Page("pages/6_📊_Reports.py", title="Reports", icon="📊"),
    st.Page("pages/7_🧪_Data_Management.py", title="Data Management", icon="🧪"),
]

st.navigation(pages).run()
