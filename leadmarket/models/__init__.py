# Models package — import all models here so Alembic can discover them.

from leadmarket.models.user import User  # noqa: F401
from leadmarket.models.category import Category, Subcategory  # noqa: F401
from leadmarket.models.provider import Provider, provider_categories  # noqa: F401
from leadmarket.models.service_request import (  # noqa: F401
    RequestCandidate,
    RequestPurchase,
    ServiceRequest,
)
from leadmarket.models.lead import LeadPurchase  # noqa: F401
from leadmarket.models.stripe_event import StripeEvent  # noqa: F401
from leadmarket.models.notification import Notification  # noqa: F401
from leadmarket.models.review import Review  # noqa: F401
from leadmarket.models.audit import AuditEvent  # noqa: F401
