from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Optional

import streamlit as st

from pharmacy.errors import ValidationError

CONFIG_FILE_NAME = "settings.json"
SRI_CONFIG_FILE_NAME = "sri_config.json"
ENV_DATA_DIR = "PHARMACY_ERP_DATA_DIR"
ENV_LOG_LEVEL = "PHARMACY_ERP_LOG_LEVEL"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    currency: str = "USD"
    vat_rate: float = 0.15
    expiry_warning_days: int = 30
    log_level: str = "INFO"


@dataclass(frozen=True)
class MerchantConfig:
    """Issuer data printed on every electronic invoice (SRI infoTributaria)."""

    ruc: str = "9999999999001"
    business_name: str = "EMPRESA PRUEBA"
    trade_name: str = "MI FARMACIA PRUEBA"
    establishment: str = "001"
    emission_point: str = "001"
    head_office_address: str = "Dirección de Pruebas"
    environment: str = "1"  # 1: test, 2: production
    emission_type: str = "1"
    keeps_accounting: str = "NO"
    withholding_agent: Optional[str] = None
    special_taxpayer: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_password: Optional[str] = None

    def validate(self) -> "MerchantConfig":
        if not re.fullmatch(r"\d{13}", str(self.ruc or "")):
            raise ValidationError("RUC must have exactly 13 digits.", field="ruc")
        if not re.fullmatch(r"\d{1,3}", str(self.establishment or "")):
            raise ValidationError("Establishment code must have 1 to 3 digits.", field="establishment")
        if not re.fullmatch(r"\d{1,3}", str(self.emission_point or "")):
            raise ValidationError("Emission point must have 1 to 3 digits.", field="emission_point")
        if str(self.environment) not in {"1", "2"}:
            raise ValidationError("Environment must be '1' (test) or '2' (production).", field="environment")
        if str(self.keeps_accounting) not in {"SI", "NO"}:
            raise ValidationError("Keeps accounting must be 'SI' or 'NO'.", field="keeps_accounting")
        if not str(self.business_name or "").strip():
            raise ValidationError("Business name is required.", field="business_name")
        return self


def _default_data_dir() -> Path:
    return Path.home() / ".pharmacy_erp"


def _load_json(path: Path) -> dict:
    if path.exists():
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
    return {}


def persist_data_dir(data_dir_str: str) -> None:
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = data_dir / CONFIG_FILE_NAME
    payload = {"data_dir": str(data_dir)}
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    st.session_state["pharmacy_erp_data_dir"] = str(data_dir)


def resolve_data_dir(session_dir: Optional[str] = None) -> Path:
    # Priority order:
    # 1) Session state (set via Data Management page)
    # 2) Environment variable
    # 3) Persisted settings in default folder
    # 4) Default folder
    if session_dir:
        return Path(session_dir).expanduser().resolve()
    if os.getenv(ENV_DATA_DIR):
        return Path(os.getenv(ENV_DATA_DIR, "")).expanduser().resolve()
    default_dir = _default_data_dir()
    persisted = _load_json(default_dir / CONFIG_FILE_NAME)
    return Path(persisted.get("data_dir", default_dir)).expanduser().resolve()


@st.cache_resource
def get_settings() -> Settings:
    data_dir = resolve_data_dir(st.session_state.get("pharmacy_erp_data_dir"))
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "farmacia.db"
    return Settings(
        data_dir=data_dir,
        db_path=db_path,
        log_level=os.getenv(ENV_LOG_LEVEL, "INFO").upper(),
    )


def load_merchant_config(data_dir: Path) -> MerchantConfig:
    """Read the persisted SRI issuer config, falling back to the test merchant."""
    raw = _load_json(Path(data_dir) / SRI_CONFIG_FILE_NAME)
    known = {f.name for f in fields(MerchantConfig)}
    return replace(MerchantConfig(), **{k: v for k, v in raw.items() if k in known})


def save_merchant_config(data_dir: Path, config: MerchantConfig) -> MerchantConfig:
    config.validate()
    path = Path(data_dir) / SRI_CONFIG_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(config), indent=2, ensure_ascii=False), encoding="utf-8")
    return config


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    # Streamlit re-runs scripts on every interaction; only install once.
    if any(getattr(h, "_pharmacy_erp", False) for h in root.handlers):
        root.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._pharmacy_erp = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
