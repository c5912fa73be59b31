"""Database models — re-exports all models.

Import from here:  from fleetparts.models import QuoteRequest, Supplier, ...
Or from submodules: from fleetparts.models.quotes import QuoteRequest
"""

from .base import Base  # noqa: F401

# Tenancy & Users
from .auth import Organization, User  # noqa: F401

# Catalog
from .fleet import AuxiliaryEmail, Part, Supplier, Vehicle  # noqa: F401

# Quote requests
from .quotes import QuoteRequest, QuoteRequestEmailThread, QuoteRequestItem  # noqa: F401

# Email threads
from .emails import EmailAttachment, EmailMessage, EmailThread, GatewayResponse  # noqa: F401

# Orders
from .orders import Order, OrderItem  # noqa: F401

# Audit
from .activity import ActivityLog  # noqa: F401
