# Overview: Shared status, method and type vocabularies for orders, payments and inventory.

# =============================================================================
# ORDER STATUS
# =============================================================================

ORDER_DRAFT = "DRAFT"
ORDER_PENDING_PAYMENT = "PENDING_PAYMENT"
ORDER_AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
ORDER_PAID = "PAID"
ORDER_PREPARING = "PREPARING"
ORDER_READY = "READY"
ORDER_COMPLETED = "COMPLETED"
ORDER_CANCELLED = "CANCELLED"
ORDER_REFUNDED = "REFUNDED"

ORDER_STATUSES = (
    ORDER_DRAFT,
    ORDER_PENDING_PAYMENT,
    ORDER_AWAITING_CONFIRMATION,
    ORDER_PAID,
    ORDER_PREPARING,
    ORDER_READY,
    ORDER_COMPLETED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
)

# Once an order reaches one of these, it can no longer be cancelled
PAID_OR_LATER = frozenset({
    ORDER_PAID,
    ORDER_PREPARING,
    ORDER_READY,
    ORDER_COMPLETED,
    ORDER_REFUNDED,
})


# =============================================================================
# PAYMENT STATUS
# =============================================================================

PAYMENT_PENDING = "PENDING"
PAYMENT_PROCESSING = "PROCESSING"
PAYMENT_COMPLETED = "COMPLETED"
PAYMENT_FAILED = "FAILED"
PAYMENT_EXPIRED = "EXPIRED"
PAYMENT_REFUNDED = "REFUNDED"
PAYMENT_PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_EXPIRED,
    PAYMENT_REFUNDED,
    PAYMENT_PARTIALLY_REFUNDED,
)


# =============================================================================
# PAYMENT METHOD / TRANSACTION TYPE
# =============================================================================

METHOD_CASH = "CASH"
METHOD_BANK_TRANSFER = "BANK_TRANSFER"
METHOD_QRIS = "QRIS"
METHOD_CREDIT_CARD = "CREDIT_CARD"
METHOD_DEBIT_CARD = "DEBIT_CARD"
METHOD_E_WALLET = "E_WALLET"
METHOD_OTHER = "OTHER"

PAYMENT_METHODS = (
    METHOD_CASH,
    METHOD_BANK_TRANSFER,
    METHOD_QRIS,
    METHOD_CREDIT_CARD,
    METHOD_DEBIT_CARD,
    METHOD_E_WALLET,
    METHOD_OTHER,
)

TXN_PAYMENT = "PAYMENT"
TXN_REFUND = "REFUND"
TXN_PARTIAL_REFUND = "PARTIAL_REFUND"


# =============================================================================
# ORDER TYPE / SOURCE / TAX
# =============================================================================

TYPE_DINE_IN = "DINE_IN"
TYPE_TAKEAWAY = "TAKEAWAY"
TYPE_DELIVERY = "DELIVERY"
ORDER_TYPES = (TYPE_DINE_IN, TYPE_TAKEAWAY, TYPE_DELIVERY)

SOURCE_CUSTOMER = "CUSTOMER"
SOURCE_CASHIER = "CASHIER"
SOURCE_ONLINE = "ONLINE"
SOURCE_PHONE = "PHONE"
ORDER_SOURCES = (SOURCE_CUSTOMER, SOURCE_CASHIER, SOURCE_ONLINE, SOURCE_PHONE)

# Order number prefix per source (e.g. CUST-20260115-00042)
ORDER_NUMBER_PREFIXES = {
    SOURCE_CUSTOMER: "CUST",
    SOURCE_CASHIER: "POS",
    SOURCE_ONLINE: "WEB",
    SOURCE_PHONE: "TEL",
}

TAX_INCLUSIVE = "INCLUSIVE"
TAX_EXCLUSIVE = "EXCLUSIVE"
TAX_TYPES = (TAX_INCLUSIVE, TAX_EXCLUSIVE)


# =============================================================================
# INVENTORY MOVEMENTS
# =============================================================================

MOVE_IN = "IN"
MOVE_OUT = "OUT"
MOVE_ADJUSTMENT = "ADJUSTMENT"
MOVE_DAMAGE = "DAMAGE"
MOVE_RETURN = "RETURN"
MOVE_TRANSFER = "TRANSFER"
MOVE_STOCK_TAKE = "STOCK_TAKE"

MOVEMENT_TYPES = (
    MOVE_IN,
    MOVE_OUT,
    MOVE_ADJUSTMENT,
    MOVE_DAMAGE,
    MOVE_RETURN,
    MOVE_TRANSFER,
    MOVE_STOCK_TAKE,
)

REFERENCE_ORDER = "ORDER"
REFERENCE_MANUAL = "MANUAL"

GATEWAY_MIDTRANS = "midtrans"
