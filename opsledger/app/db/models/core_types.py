import enum


def enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class MovementType(str, enum.Enum):
    inbound = "IN"
    outbound = "OUT"
    adjustment_plus = "ADJUSTMENT_PLUS"
    adjustment_minus = "ADJUSTMENT_MINUS"
    transfer_in = "TRANSFER_IN"
    transfer_out = "TRANSFER_OUT"

# mouvements qui retirent du stock
OUTGOING_MOVEMENTS = {
    MovementType.outbound,
    MovementType.adjustment_minus,
    MovementType.transfer_out,
}

class TransferStatus(str, enum.Enum):
    draft = "DRAFT"
    in_transit = "IN_TRANSIT"
    completed = "COMPLETED"
    cancelled = "CANCELLED"

class OrderStatus(str, enum.Enum):
    pending = "PENDING"
    invoice_pending = "INVOICE_PENDING"
    invoiced = "INVOICED"
    shipped = "SHIPPED"
    delivered = "DELIVERED"
    returned = "RETURNED"
    cancelled = "CANCELLED"

class InvoiceStatus(str, enum.Enum):
    pending = "pending"
    issued = "issued"
    failed = "failed"
    cancelled = "cancelled"

class PaymentStatus(str, enum.Enum):
    paid = "paid"
    unpaid = "unpaid"
