"""
Trade record and its wire codec.

Trades travel on the durable log as protobuf ``tradestream.Trade``
messages::

    message Trade {
      string symbol   = 1;
      double price    = 2;
      double quantity = 3;
      uint64 timestamp = 4;  // epoch milliseconds
    }

The descriptor is assembled at import time, so no generated ``_pb2``
module has to be kept in sync with the schema. Unknown fields are
skipped on decode, which keeps older consumers readable by newer
producers.
"""

from __future__ import annotations

from typing import Optional

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError, Message
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.utils.errors import TradeDecodeError

_FieldProto = descriptor_pb2.FieldDescriptorProto

TRADE_FIELDS = (
    ("symbol", 1, _FieldProto.TYPE_STRING),
    ("price", 2, _FieldProto.TYPE_DOUBLE),
    ("quantity", 3, _FieldProto.TYPE_DOUBLE),
    ("timestamp", 4, _FieldProto.TYPE_UINT64),
)


def _build_trade_message_class() -> type[Message]:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="tradestream/trade.proto",
        package="tradestream",
        syntax="proto3",
    )
    message_proto = file_proto.message_type.add(name="Trade")
    for name, number, field_type in TRADE_FIELDS:
        message_proto.field.add(
            name=name,
            number=number,
            type=field_type,
            label=_FieldProto.LABEL_OPTIONAL,
        )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("tradestream.Trade"))


TradeMessage = _build_trade_message_class()


class TradeRecord(BaseModel):
    """A single executed trade, immutable once decoded."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(min_length=1)
    price: float = Field(allow_inf_nan=False)
    quantity: float = Field(allow_inf_nan=False)
    event_time: int = Field(ge=0, description="Trade time in epoch milliseconds")


def encode_trade(record: TradeRecord) -> bytes:
    """Serialize a trade into its protobuf wire form."""
    message = TradeMessage(
        symbol=record.symbol,
        price=record.price,
        quantity=record.quantity,
        timestamp=record.event_time,
    )
    return message.SerializeToString()


def decode_trade(payload: Optional[bytes]) -> TradeRecord:
    """
    Decode a protobuf trade payload.

    Raises:
        TradeDecodeError: If the payload is missing, is not a valid
            ``Trade`` message, or carries an empty symbol or a
            non-finite number.
    """
    if not payload:
        raise TradeDecodeError("Empty trade payload")

    message = TradeMessage()
    try:
        message.ParseFromString(payload)
    except (DecodeError, TypeError) as exc:
        raise TradeDecodeError(
            f"Malformed trade payload: {exc}",
            details={"size": len(payload)},
        ) from exc

    try:
        return TradeRecord(
            symbol=message.symbol,
            price=message.price,
            quantity=message.quantity,
            event_time=message.timestamp,
        )
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise TradeDecodeError(
            f"Invalid trade payload: {first.get('msg')}",
            field=field or None,
            value=first.get("input"),
        ) from exc
