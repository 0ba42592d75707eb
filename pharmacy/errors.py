"""
Typed errors raised by the ledger, purchasing, sales and SRI services.

Every error carries a machine-readable ``code`` plus the identifiers needed to
render a user-facing message. All of them derive from ``ValueError`` so the
Streamlit pages can keep catching broadly and showing ``str(e)``.

    PharmacyError
    +-- InsufficientStockError
    +-- MissingTraceabilityDataError
    +-- NotFoundError
    +-- ValidationError
    +-- ImmutableRecordError
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class PharmacyError(ValueError):
    code: str = "PHARMACY_ERROR"


class InsufficientStockError(PharmacyError):
    """A negative movement would drive a lot below zero."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        lot_id: Any,
        on_hand: float,
        requested: float,
        *,
        presentation_id: Any = None,
    ):
        self.lot_id = lot_id
        self.presentation_id = presentation_id
        self.on_hand = on_hand
        self.requested = requested
        where = f"lot {lot_id}" if lot_id is not None else f"presentation {presentation_id}"
        super().__init__(
            f"Insufficient stock in {where}: requested {requested:g}, on hand {on_hand:g}."
        )


class MissingTraceabilityDataError(PharmacyError):
    """A receiving line has no lot code or no expiry date."""

    code: str = "MISSING_TRACEABILITY_DATA"

    def __init__(self, line_index: int, presentation_id: Any, missing: Sequence[str]):
        self.line_index = line_index
        self.presentation_id = presentation_id
        self.missing = tuple(missing)
        super().__init__(
            f"Receiving line {line_index + 1} (presentation {presentation_id}) "
            f"is missing: {', '.join(self.missing)}."
        )


class NotFoundError(PharmacyError):
    code: str = "NOT_FOUND"

    def __init__(self, entity: str, ref: Any):
        self.entity = entity
        self.ref = ref
        super().__init__(f"{entity} not found: {ref}")


class ValidationError(PharmacyError):
    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ImmutableRecordError(PharmacyError):
    """Append-only history or a finalized document was about to change."""

    code: str = "IMMUTABLE_RECORD"

    def __init__(self, entity: str, ref: Any, reason: str = ""):
        self.entity = entity
        self.ref = ref
        msg = f"{entity} {ref} cannot be modified"
        super().__init__(f"{msg}: {reason}" if reason else f"{msg}.")
