from __future__ import annotations

import streamlit as st

from pharmacy.config import configure_logging, get_settings, load_merchant_config
from pharmacy.db import get_conn, ensure_schema
from pharmacy.services.demo_data import upsert_reference_data
from pharmacy.services.ledger import reconcile

st.set_page_config(page_title="Pharmacy ERP", page_icon="💊", layout="wide")

settings = get_settings()
configure_logging(settings.log_level)

st.title("💊 Pharmacy ERP")
st.caption("Lot-level stock with expiry tracking, FEFO sales and SRI electronic invoices.")

conn = get_conn(settings.db_path)
ensure_schema(conn)
upsert_reference_data(conn)
merchant = load_merchant_config(settings.data_dir)

with st.sidebar:
    st.subheader("Environment")
    st.write(f"**Data directory:** `{settings.data_dir}`")
    st.write(f"**Database:** `{settings.db_path.name}`")
    st.write(f"**SRI environment:** {'Production' if merchant.environment == '2' else 'Test'}")
    st.write(f"**Issuer RUC:** `{merchant.ruc}`")

mismatches = reconcile(conn)
if mismatches:
    st.error(
        f"{len(mismatches)} lot(s) have an on-hand quantity that does not match their movement history: "
        + ", ".join(str(m.lot_id) for m in mismatches)
    )

st.info(
    "Use the left sidebar navigation. Start with **🧪 Data Management** to load demo data, then try **Receiving**, **Point of Sale** and **Electronic Invoicing**.",
    icon="ℹ️",
)
