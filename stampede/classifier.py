"""Response classification into the correctness taxonomy.

Order of checks matters: transport failure, 202, 409, 400 (exhaustion marker),
200 with an order number, everything else. Only 400 and 200 bodies are parsed.
"""

from __future__ import annotations

from typing import Any, Mapping

import orjson

from .models import Outcome, Verdict

DEFAULT_EXHAUSTION_MARKER = "재고"
DEFAULT_ORDER_NUMBER_FIELD = "orderNumber"

STATUS_OK = 200
STATUS_ACCEPTED = 202
STATUS_BAD_REQUEST = 400
STATUS_CONFLICT = 409


def decode_body(body: bytes | str | None) -> Mapping[str, Any] | None:
    """Decode a JSON object body. None for empty, unparsable or non-object bodies."""
    if not body:
        return None
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class ResponseClassifier:
    """Maps an Outcome to a Verdict. Stateless apart from its two settings."""

    __slots__ = ("exhaustion_marker", "order_number_field")

    def __init__(
        self,
        exhaustion_marker: str = DEFAULT_EXHAUSTION_MARKER,
        order_number_field: str = DEFAULT_ORDER_NUMBER_FIELD,
    ) -> None:
        self.exhaustion_marker = exhaustion_marker
        self.order_number_field = order_number_field

    def classify(self, outcome: Outcome) -> Verdict:
        status = outcome.status_code
        if status is None:
            return Verdict.UNEXPECTED_FAILURE
        if status == STATUS_ACCEPTED:
            return Verdict.GRANTED
        if status == STATUS_CONFLICT:
            return Verdict.DUPLICATE_REJECTED
        if status == STATUS_BAD_REQUEST:
            data = decode_body(outcome.body)
            message = data.get("message") if data is not None else None
            if isinstance(message, str) and self.exhaustion_marker and self.exhaustion_marker in message:
                return Verdict.RESOURCE_EXHAUSTED
            return Verdict.UNEXPECTED_FAILURE
        if status == STATUS_OK:
            data = decode_body(outcome.body)
            if data is not None and data.get(self.order_number_field) is not None:
                return Verdict.GRANTED
        return Verdict.UNEXPECTED_FAILURE
