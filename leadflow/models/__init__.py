from leadflow.models.audit import AuditLog
from leadflow.models.notification import Notification
from leadflow.models.user import User
from leadflow.crm.models import (
	Counter,
	Lead,
	LeadAction,
	LeadNote,
	LeadSettings,
	lead_stars,
)

__all__ = [
	"AuditLog",
	"Counter",
	"Lead",
	"LeadAction",
	"LeadNote",
	"LeadSettings",
	"Notification",
	"User",
	"lead_stars",
]
