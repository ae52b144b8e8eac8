# Import every model so Base.metadata and relationship names are complete
from order_placement.models.base import Base  # noqa: F401
from order_placement.models.user import User  # noqa: F401
from order_placement.models.audit import Audit  # noqa: F401
from order_placement.models.supplier import Supplier, SupplierRequirement, SupplierDeliverySchedule  # noqa: F401
from order_placement.models.supplier_credential import SupplierCredential  # noqa: F401
from order_placement.models.supplier_product import SupplierProduct  # noqa: F401
from order_placement.models.order import Order, OrderItem  # noqa: F401
from order_placement.models.order_validation import OrderValidation  # noqa: F401
from order_placement.models.two_factor_challenge import TwoFactorChallenge  # noqa: F401
