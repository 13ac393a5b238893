"""Known receipt subjects and receipt types.

A receipt references its originating domain object by `(model_type, model_id)`.
`model_type` is one of the kinds below; anything else is rejected rather than
resolved dynamically.
"""

from pydantic import BaseModel


class ReceiptSubject(BaseModel):
    kind: str
    reference_prefix: str


class ReceiptType(BaseModel):
    name: str
    label: str
    line_description: str


RECEIPT_SUBJECTS: dict[str, ReceiptSubject] = {
    "order": ReceiptSubject(kind="order", reference_prefix="ORDER"),
    "subscription": ReceiptSubject(kind="subscription", reference_prefix="SUBSCRIPTION"),
}

RECEIPT_TYPES: dict[str, ReceiptType] = {
    "delivery": ReceiptType(name="delivery", label="Delivery", line_description="Delivery Fee"),
    "subscription": ReceiptType(name="subscription", label="Subscription", line_description="Subscription Fee"),
}


def resolve_subject(model_type: str) -> ReceiptSubject:
    try:
        return RECEIPT_SUBJECTS[model_type]
    except KeyError:
        raise ValueError(f"Unknown receipt subject: {model_type}") from None


def resolve_receipt_type(receipt_type: str) -> ReceiptType:
    try:
        return RECEIPT_TYPES[receipt_type]
    except KeyError:
        raise ValueError(f"Invalid receipt type: {receipt_type}") from None


def subject_reference(model_type: str, model_id) -> str:
    return f"{resolve_subject(model_type).reference_prefix}-{model_id}"
