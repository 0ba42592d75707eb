"""
SRI (Ecuador) electronic invoicing: access key and invoice XML.

Everything here is pure: same inputs, same output, no store access. Signing
(XAdES-BES with the merchant's PKCS#12 certificate) and submission to the SRI
web services are external collaborators reached through DocumentSigner.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

from pharmacy.config import MerchantConfig
from pharmacy.errors import ValidationError
from pharmacy.utils import DateLike, money, parse_date

logger = logging.getLogger(__name__)

DOC_INVOICE = "01"
ACCESS_KEY_LENGTH = 49

# codigoPorcentaje -> rate. 2 carries the current general VAT rate.
VAT_ZERO = "0"
VAT_GENERAL = "2"
VAT_NOT_SUBJECT = "6"
VAT_EXEMPT = "7"
VAT_TAX_CODE = "2"  # codigo: 2 = IVA

PAYMENT_CODES = {"cash": "01", "card": "19", "transfer": "20"}

ID_RUC = "04"
ID_CEDULA = "05"
ID_PASSPORT = "06"
ID_FINAL_CONSUMER = "07"
FINAL_CONSUMER_ID = "9999999999999"
FINAL_CONSUMER_NAME = "CONSUMIDOR FINAL"


def mod11_check_digit(digits: str) -> int:
    """
    Modulo-11 check digit, weights 2..7 applied from the rightmost digit.
    A result of 11 becomes 0 and 10 becomes 1.
    """
    if not digits or not str(digits).isdigit():
        raise ValidationError("Check digit input must be a non-empty digit string.", field="digits")
    total = 0
    weight = 2
    for ch in reversed(str(digits)):
        total += int(ch) * weight
        weight = 2 if weight == 7 else weight + 1
    check = 11 - (total % 11)
    if check == 11:
        return 0
    if check == 10:
        return 1
    return check


def _digits(value: Any, width: int, name: str) -> str:
    s = str(value).strip()
    if not s.isdigit():
        raise ValidationError(f"{name} must be numeric, got {value!r}.", field=name)
    if len(s) > width:
        raise ValidationError(f"{name} does not fit in {width} digits: {value!r}.", field=name)
    return s.zfill(width)


def generate_access_key(
    issue_date: DateLike,
    document_type_code: str,
    sequential_number: int,
    merchant: MerchantConfig,
    *,
    numeric_code: Optional[int] = None,
) -> str:
    """
    49-digit clave de acceso:

        ddmmyyyy | doc type (2) | RUC (13) | environment (1) |
        establishment (3) + emission point (3) | sequential (9) |
        numeric code (8) | emission type '1' | check digit
    """
    d = parse_date(issue_date, field="issue_date")
    environment = str(merchant.environment).strip()
    if environment not in {"1", "2"}:
        raise ValidationError("Environment must be '1' or '2'.", field="environment")
    partial = "".join(
        [
            d.strftime("%d%m%Y"),
            _digits(document_type_code, 2, "document_type_code"),
            _digits(merchant.ruc, 13, "ruc"),
            environment,
            _digits(merchant.establishment, 3, "establishment"),
            _digits(merchant.emission_point, 3, "emission_point"),
            _digits(sequential_number, 9, "sequential_number"),
            _digits(sequential_number if numeric_code is None else numeric_code, 8, "numeric_code"),
            "1",
        ]
    )
    return f"{partial}{mod11_check_digit(partial)}"


def validate_access_key(key: str) -> bool:
    s = str(key or "")
    if len(s) != ACCESS_KEY_LENGTH or not s.isdigit():
        return False
    return mod11_check_digit(s[:-1]) == int(s[-1])


def vat_rate_for(vat_code: str, general_rate: float = 0.15) -> float:
    return float(general_rate) if str(vat_code) == VAT_GENERAL else 0.0


@dataclass(frozen=True)
class TaxBucket:
    vat_code: str
    base: float
    tax: float


def tax_buckets(lines: Iterable[Any], general_rate: float = 0.15) -> list[TaxBucket]:
    """Group line subtotals by VAT code; lines need `.vat_code` and `.subtotal`."""
    bases: dict[str, float] = {}
    for line in lines:
        code = str(line.vat_code)
        bases[code] = bases.get(code, 0.0) + float(line.subtotal)
    return [
        TaxBucket(vat_code=code, base=money(base), tax=money(base * vat_rate_for(code, general_rate)))
        for code, base in sorted(bases.items())
    ]


@dataclass(frozen=True)
class Buyer:
    id_type: str
    identification: str
    name: str
    address: str


def buyer_identification(customer: Optional[Any]) -> Buyer:
    """
    Buyer block from the customer's document length: 10 digits is a cédula,
    13 a RUC, anything else a passport. No customer (or no document) is the
    generic final consumer.
    """
    document = str(getattr(customer, "document", "") or "").strip() if customer is not None else ""
    if not document:
        return Buyer(ID_FINAL_CONSUMER, FINAL_CONSUMER_ID, FINAL_CONSUMER_NAME, "S/D")
    if len(document) == 10:
        id_type = ID_CEDULA
    elif len(document) == 13:
        id_type = ID_RUC
    else:
        id_type = ID_PASSPORT
    return Buyer(
        id_type=id_type,
        identification=document,
        name=str(getattr(customer, "full_name", "") or FINAL_CONSUMER_NAME),
        address=str(getattr(customer, "address", "") or "S/D"),
    )


def _sub(parent: ET.Element, tag: str, text: Any) -> ET.Element:
    el = ET.SubElement(parent, tag)
    el.text = str(text)
    return el


def _amount(v: float) -> str:
    return f"{money(v):.2f}"


def render_invoice(
    sale: Any,
    merchant: MerchantConfig,
    customer: Optional[Any] = None,
    *,
    general_rate: float = 0.15,
) -> str:
    """
    Serialize a finalized sale as an SRI `factura` v2.1.0 document.

    `sale` needs id, sold_at, access_key, payment_method and lines (each with
    presentation_id, description, quantity, unit_price, subtotal, vat_code).
    """
    if not getattr(sale, "access_key", None):
        raise ValidationError(f"Sale {sale.id} has no access key; finalize it first.", field="access_key")

    buckets = tax_buckets(sale.lines, general_rate)
    subtotal = money(sum(b.base for b in buckets))
    tax_total = money(sum(b.tax for b in buckets))
    total = money(subtotal + tax_total)
    buyer = buyer_identification(customer)
    issued = parse_date(sale.sold_at, field="sold_at")

    root = ET.Element("factura", {"id": "comprobante", "version": "2.1.0"})

    info_trib = ET.SubElement(root, "infoTributaria")
    _sub(info_trib, "ambiente", merchant.environment)
    _sub(info_trib, "tipoEmision", merchant.emission_type)
    _sub(info_trib, "razonSocial", merchant.business_name)
    _sub(info_trib, "nombreComercial", merchant.trade_name or merchant.business_name)
    _sub(info_trib, "ruc", merchant.ruc)
    _sub(info_trib, "claveAcceso", sale.access_key)
    _sub(info_trib, "codDoc", DOC_INVOICE)
    _sub(info_trib, "estab", str(merchant.establishment).zfill(3))
    _sub(info_trib, "ptoEmi", str(merchant.emission_point).zfill(3))
    _sub(info_trib, "secuencial", str(sale.id).zfill(9))
    _sub(info_trib, "dirMatriz", merchant.head_office_address)
    if merchant.withholding_agent:
        _sub(info_trib, "agenteRetencion", merchant.withholding_agent)
    if merchant.special_taxpayer:
        _sub(info_trib, "contribuyenteEspecial", merchant.special_taxpayer)

    info = ET.SubElement(root, "infoFactura")
    _sub(info, "fechaEmision", issued.strftime("%d/%m/%Y"))
    _sub(info, "dirEstablecimiento", merchant.head_office_address)
    _sub(info, "obligadoContabilidad", merchant.keeps_accounting)
    _sub(info, "tipoIdentificacionComprador", buyer.id_type)
    _sub(info, "razonSocialComprador", buyer.name)
    _sub(info, "identificacionComprador", buyer.identification)
    _sub(info, "direccionComprador", buyer.address)
    _sub(info, "totalSinImpuestos", _amount(subtotal))
    _sub(info, "totalDescuento", "0.00")

    totals = ET.SubElement(info, "totalConImpuestos")
    for b in buckets:
        t = ET.SubElement(totals, "totalImpuesto")
        _sub(t, "codigo", VAT_TAX_CODE)
        _sub(t, "codigoPorcentaje", b.vat_code)
        _sub(t, "baseImponible", _amount(b.base))
        _sub(t, "valor", _amount(b.tax))

    _sub(info, "propina", "0.00")
    _sub(info, "importeTotal", _amount(total))
    _sub(info, "moneda", "DOLAR")

    pago = ET.SubElement(ET.SubElement(info, "pagos"), "pago")
    _sub(pago, "formaPago", PAYMENT_CODES.get(str(sale.payment_method), "01"))
    _sub(pago, "total", _amount(total))

    detalles = ET.SubElement(root, "detalles")
    for line in sale.lines:
        rate = vat_rate_for(line.vat_code, general_rate)
        det = ET.SubElement(detalles, "detalle")
        _sub(det, "codigoPrincipal", line.presentation_id)
        _sub(det, "descripcion", line.description or "Producto")
        _sub(det, "cantidad", f"{float(line.quantity):.2f}")
        _sub(det, "precioUnitario", _amount(line.unit_price))
        _sub(det, "descuento", "0.00")
        _sub(det, "precioTotalSinImpuesto", _amount(line.subtotal))
        imp = ET.SubElement(ET.SubElement(det, "impuestos"), "impuesto")
        _sub(imp, "codigo", VAT_TAX_CODE)
        _sub(imp, "codigoPorcentaje", line.vat_code)
        _sub(imp, "tarifa", f"{rate * 100:g}")
        _sub(imp, "baseImponible", _amount(line.subtotal))
        _sub(imp, "valor", _amount(float(line.subtotal) * rate))

    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")


class DocumentSigner(Protocol):
    def sign(self, document: str, credential: "SigningCredential") -> str: ...


@dataclass(frozen=True)
class SigningCredential:
    certificate_path: str
    password: str


def sign_invoice(document: str, merchant: MerchantConfig, signer: DocumentSigner) -> str:
    if not merchant.certificate_path or not merchant.certificate_password:
        raise ValidationError(
            "Signing configuration incomplete (certificate path or password missing).",
            field="certificate_path",
        )
    credential = SigningCredential(merchant.certificate_path, merchant.certificate_password)
    logger.info("Signing invoice with certificate %s", merchant.certificate_path)
    return signer.sign(document, credential)
