"""
KIS realtime wire format.

Two kinds of text frames arrive on the socket:

- Data frames: ``<encrypted>|<tr_id>|<record count>|<f0>^<f1>^...``,
  several records concatenated in one caret-separated field list.
- Control frames: JSON objects (subscription acknowledgements and the
  server's PINGPONG keep-alive, which must be echoed back verbatim).
"""

import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, SecretStr

from kisbroker.core.constants import (
    MSG_APPROVAL_INVALID,
    REALTIME_PINGPONG,
    REALTIME_REGISTER,
    REALTIME_UNREGISTER,
    TrId,
)
from kisbroker.models import TickEvent

# H0STCNT0 field positions
FIELD_CODE = 0
FIELD_TIME = 1
FIELD_PRICE = 2
FIELD_TRADE_VOLUME = 12
FIELD_ACCUMULATED_VOLUME = 13

MIN_RECORD_WIDTH = FIELD_ACCUMULATED_VOLUME + 1


class ControlMessage(BaseModel):
    """A decoded JSON control frame."""
    tr_id: str = ""
    tr_key: str = ""
    rt_cd: Optional[str] = None
    msg_cd: str = ""
    msg1: str = ""

    @property
    def is_pingpong(self) -> bool:
        return self.tr_id == REALTIME_PINGPONG

    @property
    def is_error(self) -> bool:
        return self.rt_cd is not None and self.rt_cd != "0"

    @property
    def is_approval_error(self) -> bool:
        """The broker no longer recognises the approval key the subscription carried."""
        return self.is_error and (self.msg_cd == MSG_APPROVAL_INVALID or "approval" in self.msg1.lower())


def build_subscription_message(
    approval_key: SecretStr,
    instrument: str,
    register: bool = True,
    customer_type: str = "P",
    tr_id: TrId = TrId.REALTIME_PRICE,
) -> str:
    """Register or release realtime executions for one instrument."""
    return json.dumps({
        "header": {
            "approval_key": approval_key.get_secret_value(),
            "custtype": customer_type,
            "tr_type": REALTIME_REGISTER if register else REALTIME_UNREGISTER,
            "content-type": "utf-8",
        },
        "body": {
            "input": {
                "tr_id": tr_id.value,
                "tr_key": instrument,
            }
        },
    })


def is_data_frame(raw: str) -> bool:
    return len(raw) > 2 and raw[0] in "01" and raw[1] == "|"


def parse_control(raw: str) -> ControlMessage:
    """
    Decode a JSON control frame.

    Raises:
        ValueError: The frame is not a JSON object
    """
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"unreadable control frame: {exc}") from exc
    if not isinstance(message, dict):
        raise ValueError("control frame is not an object")

    header = message.get("header") or {}
    body = message.get("body") or {}
    return ControlMessage(
        tr_id=header.get("tr_id", ""),
        tr_key=header.get("tr_key", ""),
        rt_cd=body.get("rt_cd"),
        msg_cd=body.get("msg_cd", ""),
        msg1=(body.get("msg1") or "").strip(),
    )


def parse_ticks(raw: str, trade_date: date, zone: ZoneInfo) -> List[TickEvent]:
    """
    Decode an H0STCNT0 data frame into ticks.

    The accumulated-volume field becomes the tick's sequence marker: it is
    strictly increasing per instrument within a trading day.

    Raises:
        ValueError: Malformed or encrypted frame
    """
    parts = raw.split("|", 3)
    if len(parts) != 4:
        raise ValueError("data frame does not have four segments")
    encrypted, tr_id, count_text, payload = parts
    if encrypted != "0":
        raise ValueError(f"encrypted frame for {tr_id} cannot be decoded")
    if tr_id != TrId.REALTIME_PRICE.value:
        raise ValueError(f"unexpected realtime TR ID {tr_id}")

    try:
        count = int(count_text)
    except ValueError as exc:
        raise ValueError(f"bad record count {count_text!r}") from exc
    fields = payload.split("^")
    if count <= 0 or len(fields) % count:
        raise ValueError(f"{len(fields)} fields do not split into {count} records")
    width = len(fields) // count
    if width < MIN_RECORD_WIDTH:
        raise ValueError(f"record width {width} too small")

    ticks = []
    for i in range(count):
        record = fields[i * width:(i + 1) * width]
        try:
            stamp = datetime.combine(trade_date, datetime.strptime(record[FIELD_TIME], "%H%M%S").time())
            ticks.append(TickEvent(
                instrument=record[FIELD_CODE],
                price=Decimal(record[FIELD_PRICE]),
                volume=int(record[FIELD_TRADE_VOLUME]),
                timestamp=stamp.replace(tzinfo=zone),
                trade_date=trade_date,
                sequence=int(record[FIELD_ACCUMULATED_VOLUME]),
            ))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"bad tick record {i}: {exc}") from exc
    return ticks
