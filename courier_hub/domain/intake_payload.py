"""
Queued request payload parsing

Payloads are pushed by external automation (WhatsApp extraction) and are
schema-loose: field names vary between automation versions and any field may
be missing. Parsing never fails on a dict; missing data falls back to
defaults so every queued request can still be shown and assigned.
"""
import hashlib
import json
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from courier_hub.core.config import settings

NAME_KEYS = ("nome", "nome_cliente", "customer_name")
ADDRESS_KEYS = ("endereco_entrega", "endereco_texto", "address", "destination_address")
TOTAL_KEYS = ("valor_frete", "valor_total", "valor", "fee")
PHONE_KEYS = ("telefone", "telefone_cliente", "phone")
REQUESTED_AT_KEYS = ("data_hora", "requested_at")
NOTE_KEYS = ("observacao", "observacoes", "note")
STRUCTURED_ADDRESS_PARTS = ("rua", "numero", "bairro", "cidade")

SLOT_ID_KEY = "_slot_id"
RECEIVED_AT_KEY = "_received_at"


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _first_text(raw: dict, keys: tuple) -> Optional[str]:
    for key in keys:
        text = _text(raw.get(key))
        if text:
            return text
    return None


def strip_note_prefix(note: Optional[str]) -> Optional[str]:
    """Remove the automation's extraction prefix from a free-text note"""
    if not note:
        return None
    prefix = settings.INTAKE_NOTE_PREFIX
    if prefix and note.startswith(prefix):
        note = note[len(prefix):]
    return note.strip() or None


def slot_identity(raw: dict) -> str:
    """
    Stable identity of a queue slot.

    Slots enqueued through the webhook carry a stamped ``_slot_id``; older
    slots are identified by a digest of their content.
    """
    stamped = _text(raw.get(SLOT_ID_KEY))
    if stamped:
        return stamped
    encoded = json.dumps(raw, sort_keys=True, ensure_ascii=False, default=str)
    return "sha-" + hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:40]


def promotion_slot_id(raw: dict) -> str:
    """
    Value stored in ``Delivery.intake_slot_id`` when a slot is promoted.

    Stamped slots keep their id. Content digests are not unique (the same
    legacy payload can sit in several queues), so an unstamped slot gets a
    fresh id at promotion time.
    """
    stamped = _text(raw.get(SLOT_ID_KEY))
    if stamped:
        return stamped
    return "legacy-" + uuid.uuid4().hex


def parse_money(value: Any) -> Decimal:
    """Numbers or strings like "20", "20.5", "R$ 20,50"; unparseable -> 0.00"""
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        text = str(value).strip().replace("R$", "").replace(" ", "")
        if "," in text:
            # pt-BR: "1.234,56"
            text = text.replace(".", "").replace(",", ".")
    try:
        amount = Decimal(text)
        if not amount.is_finite() or amount < 0:
            return Decimal("0.00")
        # quantize fails on values beyond the context precision
        return amount.quantize(Decimal("0.01"))
    except InvalidOperation:
        return Decimal("0.00")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    text = _text(value)
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _destination_lines(raw: dict, stripped_note: Optional[str]) -> list[str]:
    structured = raw.get("endereco")
    if isinstance(structured, dict):
        parts = [_text(structured.get(part)) for part in STRUCTURED_ADDRESS_PARTS]
        lines = [part for part in parts if part]
        if lines:
            return lines
    elif _text(structured):
        return [_text(structured)]

    for key in ADDRESS_KEYS:
        value = raw.get(key)
        if isinstance(value, list):
            lines = [line for line in (_text(item) for item in value) if line]
            if lines:
                return lines
        elif _text(value):
            return [_text(value)]

    if stripped_note:
        return [stripped_note]
    return []


class QueuedRequest(BaseModel):
    """Normalized view of a raw queued payload"""

    model_config = ConfigDict(frozen=True)

    slot_id: str
    customer_name: str
    customer_phone: Optional[str] = None
    destination_address: list[str] = []
    total_value: Decimal = Decimal("0.00")
    requested_at: Optional[datetime] = None
    note: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def from_loose_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("queued request payload must be an object")

        note = _first_text(data, NOTE_KEYS)
        stripped_note = strip_note_prefix(note)
        return {
            "slot_id": slot_identity(data),
            "customer_name": (
                _first_text(data, NAME_KEYS)
                or stripped_note
                or settings.INTAKE_FALLBACK_CUSTOMER_NAME
            ),
            "customer_phone": _first_text(data, PHONE_KEYS),
            "destination_address": _destination_lines(data, stripped_note),
            "total_value": next(
                (data[key] for key in TOTAL_KEYS if data.get(key) not in (None, "")),
                None,
            ),
            "requested_at": next(
                (data[key] for key in REQUESTED_AT_KEYS if data.get(key)),
                None,
            ),
            "note": note,
        }

    @field_validator("total_value", mode="before")
    @classmethod
    def lenient_total(cls, v: Any) -> Decimal:
        return parse_money(v)

    @field_validator("requested_at", mode="before")
    @classmethod
    def lenient_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @classmethod
    def from_raw(cls, raw: Any) -> "QueuedRequest":
        return cls.model_validate(raw)
