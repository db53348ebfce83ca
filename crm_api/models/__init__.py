"""Central model registry — import all models so Alembic autodiscover works."""

from crm_api.database import Base  # noqa: F401

from crm_api.models.organization import Organization, Project  # noqa: F401
from crm_api.models.user import Role, User  # noqa: F401
from crm_api.models.task import Task  # noqa: F401
from crm_api.models.approval_policy import ApprovalPolicy  # noqa: F401
from crm_api.models.approval import (  # noqa: F401
    ApprovalRequest,
    ApproverAction,
    ApprovalEscalation,
)
from crm_api.models.audit_log import AuditLog  # noqa: F401
from crm_api.models.notification import AppNotification  # noqa: F401
from crm_api.models.unit import Unit  # noqa: F401
from crm_api.models.lead import Lead  # noqa: F401
from crm_api.models.sale import Sale, PaymentPlan  # noqa: F401
from crm_api.models.installment import Installment  # noqa: F401
from crm_api.models.invoice import Invoice  # noqa: F401
from crm_api.models.payment import PaymentTransaction  # noqa: F401
