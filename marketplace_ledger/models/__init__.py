from marketplace_ledger.models.nonprofit import Nonprofit
from marketplace_ledger.models.shop import Shop, SellerConnectedAccount
from marketplace_ledger.models.product import Product, ProductVariant
from marketplace_ledger.models.order import Order
from marketplace_ledger.models.order_item import OrderItem
from marketplace_ledger.models.finance import (
    Donation,
    NonprofitPayout,
    Payment,
    Seller1099Data,
    SellerBalance,
    SellerPayout,
)
from marketplace_ledger.models.transfer import PayoutTransfer
