from __future__ import annotations

import streamlit as st

from pharmacy.config import configure_logging, get_settings

st.set_page_config(page_title="Pharmacy ERP", page_icon="💊", layout="wide")
configure_logging(get_settings().log_level)

pages = [
    st.Page("home.py", title="Home", icon="🏠"),
    st.Page("pages/1_📥_Receiving.py", title="Receiving", icon="📥"),
    st.Page("pages/2_📦_Inventory.py", title="Inventory", icon="📦"),
    st.Page("pages/3_🛒_Point_of_Sale.py", title="Point of Sale", icon="🛒"),
    st.Page("pages/4_🧾_Electronic_Invoicing.py", title="Electronic Invoicing", icon="🧾"),
    st.Page("pages/5_🧪_Data_Management.py", title="Data Management", icon="🧪"),
    st.Page("pages/6_📊_Reports.py", title="Reports", icon="📊"),
]

st.navigation(pages).run()
